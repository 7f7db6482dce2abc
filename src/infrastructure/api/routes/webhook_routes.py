from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from src.application.dtos.billing_dto import WebhookAck, WebhookError
from src.application.use_cases.reconcile_entitlement import ReconcileEntitlementUseCase
from src.infrastructure.api.dependencies import get_reconciler

router = APIRouter(
    tags=["Billing Webhooks"],
    responses={
        400: {"model": WebhookError, "description": "Bad Request - Invalid signature or malformed event"},
        405: {"description": "Method Not Allowed - Only POST is accepted"},
    },
)


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Payment Provider Webhook",
    description="""
    Receive a subscription event from the active payment provider.

    The request body is read raw and verified against the provider's
    signature scheme before it is parsed:
    - **Stripe**: `Stripe-Signature` (`t=...,v1=...`)
    - **PayPal**: `PayPal-Transmission-*` headers, checked through PayPal's API
    - **Paddle**: `Paddle-Signature` (`ts=...;h1=...`)
    - **Lemon Squeezy**: `X-Signature` (hex HMAC-SHA256)
    - **Gumroad**: form-encoded ping, `seller_id` must match

    Verified events always get `200 {"received": true}`, including events of
    unknown types and events that match no user, so the provider stops
    redelivering them.
    """,
    response_description="Acknowledgement of the delivery",
)
async def receive_webhook(
    request: Request,
    reconciler: ReconcileEntitlementUseCase = Depends(get_reconciler),
):
    """Verify, classify and apply a payment provider event."""
    raw_body = await request.body()
    result = await run_in_threadpool(reconciler.execute, raw_body, dict(request.headers))
    return JSONResponse(status_code=result.status_code, content=result.body)
