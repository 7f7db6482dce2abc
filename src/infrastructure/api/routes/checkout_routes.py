from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from src.application.dtos.billing_dto import CheckoutRequest, CheckoutResponse
from src.application.dtos.common_dto import ErrorResponse
from src.application.use_cases.start_checkout import StartCheckoutUseCase
from src.domain.errors import ProviderApiUnavailable
from src.infrastructure.api.dependencies import get_checkout_use_case

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Checkout"],
    responses={
        400: {"model": ErrorResponse, "description": "Bad Request - userId or userEmail missing"},
        500: {"model": ErrorResponse, "description": "Payment provider call failed"},
    },
)


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
    summary="Start Premium Checkout",
    description="""
    Create a hosted checkout with the active payment provider.

    The user id is embedded in the checkout metadata so the provider echoes
    it back in its webhooks; no other state is kept between checkout and
    webhook.

    **Request**: `{"userId": "...", "userEmail": "..."}`
    """,
    response_description="Provider checkout URL and session id",
)
async def create_checkout(
    body: CheckoutRequest,
    checkout: StartCheckoutUseCase = Depends(get_checkout_use_case),
):
    """Return a provider-hosted checkout URL for the user."""
    user_id = (body.user_id or "").strip()
    email = (body.user_email or "").strip()
    if not user_id or not email:
        raise HTTPException(status_code=400, detail="userId and userEmail are required")
    try:
        session = await run_in_threadpool(checkout.execute, user_id, email)
    except ProviderApiUnavailable as exc:
        logger.error("Checkout failed for user %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail="Failed to create checkout session")
    return CheckoutResponse(url=session.url, session_id=session.session_id, provider=session.provider)
