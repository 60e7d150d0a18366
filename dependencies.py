"""FastAPI dependencies that build the per-request clients and service.

Clients carry their own credentials and are created from settings here, so
tests swap them through ``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clients.entitlements import EntitlementClient, GrantStrategy, build_grant_strategy
from clients.identity import IdentityClient
from clients.payments import PaymentClient
from db import get_db
from services.lead_store import LeadStore
from services.reconciliation import LeadReconciliationService
from settings import settings


def _http_options() -> dict:
    return {
        "connect_timeout": settings.http_connect_timeout,
        "read_timeout": settings.http_read_timeout,
        "max_retries": settings.http_max_retries,
    }


def get_identity_client() -> IdentityClient:
    return IdentityClient(
        settings.clerk_api_url,
        settings.clerk_secret_key,
        sign_in_token_ttl_seconds=settings.sign_in_token_ttl_seconds,
        **_http_options(),
    )


def get_payment_client() -> PaymentClient:
    return PaymentClient(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        timeout=settings.http_read_timeout,
        max_retries=settings.http_max_retries,
    )


def get_entitlement_client() -> EntitlementClient:
    return EntitlementClient(
        settings.revenuecat_api_url,
        settings.revenuecat_secret_key,
        entitlement_id=settings.revenuecat_entitlement_id,
        stripe_public_key=settings.revenuecat_stripe_public_key,
        **_http_options(),
    )


def get_grant_strategy(client: EntitlementClient = Depends(get_entitlement_client)) -> GrantStrategy:
    return build_grant_strategy(settings.entitlement_strategy, client)


def get_lead_service(
    db: AsyncSession = Depends(get_db),
    identity: IdentityClient = Depends(get_identity_client),
    payments: PaymentClient = Depends(get_payment_client),
    entitlements: EntitlementClient = Depends(get_entitlement_client),
    grants: GrantStrategy = Depends(get_grant_strategy),
) -> LeadReconciliationService:
    return LeadReconciliationService(
        store=LeadStore(db),
        identity=identity,
        payments=payments,
        entitlements=entitlements,
        grants=grants,
        frontend_url=settings.frontend_url,
    )
