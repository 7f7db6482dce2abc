from __future__ import annotations

from fastapi import Depends, Request

from src.application.use_cases.reconcile_entitlement import ReconcileEntitlementUseCase
from src.application.use_cases.start_checkout import StartCheckoutUseCase
from src.infrastructure.database.repositories.profile_repository import ProfileRepository
from src.infrastructure.payments.base import PaymentProvider


# Collaborators are built once in the app lifespan and kept on app.state


def get_profile_repo(request: Request) -> ProfileRepository:
    return request.app.state.profiles


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.provider


def get_reconciler(
    provider: PaymentProvider = Depends(get_payment_provider),
    profiles: ProfileRepository = Depends(get_profile_repo),
) -> ReconcileEntitlementUseCase:
    return ReconcileEntitlementUseCase(provider=provider, profiles=profiles)


def get_checkout_use_case(
    provider: PaymentProvider = Depends(get_payment_provider),
) -> StartCheckoutUseCase:
    return StartCheckoutUseCase(provider=provider)
