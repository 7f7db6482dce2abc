from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    """Request body for starting a checkout.

    Both fields are optional at the schema level so that a missing value is
    answered with 400 rather than a 422 validation error.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(
        None, alias="userId", description="Id of the signed-in user", examples=["8f14e45f-..."]
    )
    user_email: Optional[str] = Field(
        None, alias="userEmail", description="Email of the signed-in user", examples=["pilot@example.com"]
    )


class CheckoutResponse(BaseModel):
    """Provider-hosted checkout to redirect the browser to."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., description="Checkout URL hosted by the payment provider")
    session_id: Optional[str] = Field(
        None, alias="sessionId", description="Provider session, transaction or subscription id"
    )
    provider: str = Field(..., description="Active payment provider", examples=["stripe"])


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""
    received: bool = Field(True, description="Event was verified and processed")


class WebhookError(BaseModel):
    """Returned when a delivery fails verification or parsing."""
    error: str = Field(..., description="Reason the delivery was rejected", examples=["Invalid signature"])
