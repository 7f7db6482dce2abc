from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.application.dtos.common_dto import HealthResponse, RootResponse
from src.infrastructure.api.middlewares import add_default_middlewares
from src.infrastructure.api.routes.checkout_routes import router as checkout_router
from src.infrastructure.api.routes.webhook_routes import router as webhook_router
from src.infrastructure.database.postgres_client import PostgresClient, local_db_enabled
from src.infrastructure.database.repositories.profile_repository import ProfileRepository
from src.infrastructure.database.supabase_client import create_supabase_client
from src.infrastructure.payments.base import PaymentProvider
from src.infrastructure.payments.registry import build_provider

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_profile_repository() -> tuple[ProfileRepository, PostgresClient | None]:
    if local_db_enabled():
        pg_client = PostgresClient()
        return ProfileRepository(client=None, pg_client=pg_client), pg_client
    return ProfileRepository(create_supabase_client()), None


def create_app(
    profiles: ProfileRepository | None = None,
    provider: PaymentProvider | None = None,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pg_client = None
        app.state.profiles = profiles
        app.state.provider = provider
        if app.state.profiles is None:
            app.state.profiles, pg_client = build_profile_repository()
        if app.state.provider is None:
            app.state.provider = build_provider()
        logger.info(
            "Billing backend started (provider=%s, store=%s)",
            app.state.provider.name,
            app.state.profiles.mode,
        )
        try:
            yield
        finally:
            if provider is None:
                app.state.provider.close()
            if pg_client is not None:
                pg_client.close()

    app = FastAPI(
        title="AeroScout Billing Backend",
        version="0.1.0",
        description="""
        ## AeroScout Billing API

        Premium subscriptions for the AeroScout aviation job board. One payment
        provider is active per deployment (Stripe, PayPal, Paddle, Gumroad or
        Lemon Squeezy); its webhooks keep the `is_premium` flag on Supabase
        `profiles` rows in sync.

        ### Features
        - **Checkout**: Start a provider-hosted checkout for a signed-in user
        - **Webhooks**: Verify provider events and reconcile user entitlements
        - **Pending profiles**: Purchases made before signup are kept by email

        ### Error Responses
        - **400 Bad Request**: Missing checkout fields, invalid webhook signature or body
        - **405 Method Not Allowed**: Non-POST request to a POST endpoint
        - **500 Internal Server Error**: Payment provider call failed
        """,
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    add_default_middlewares(app)

    @app.get(
        "/",
        response_model=RootResponse,
        summary="API Root",
        description="Get basic information about the billing API",
        response_description="API information including status, version and provider",
    )
    def root():
        """Get API root information."""
        return {
            "status": "ok",
            "service": "aeroscout-billing",
            "version": app.version,
            "provider": app.state.provider.name,
        }

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        description="Check if the API service is running and healthy",
        response_description="Health status of the API service",
    )
    def health():
        """Check API health status."""
        return {"status": "healthy"}

    app.include_router(checkout_router)
    app.include_router(webhook_router)
    return app


app = create_app()
