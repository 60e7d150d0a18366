import logging

from fastapi import APIRouter, Depends, Request

from clients.payments import PaymentClient
from dependencies import get_lead_service, get_payment_client
from errors import WebhookVerificationError
from schemas.webhooks import EntitlementWebhook
from services.reconciliation import LeadReconciliationService
from settings import settings
from utils import verify_hmac_signature

log = logging.getLogger("quizfunnel")

webhooks_router = APIRouter(prefix="/webhooks")

# Once the signature checks out we always answer 200: a provider retrying a
# permanently failing event forever helps nobody, the log is where we look.


@webhooks_router.post("/payment")
async def payment_webhook(
    request: Request,
    payments: PaymentClient = Depends(get_payment_client),
    service: LeadReconciliationService = Depends(get_lead_service),
):
    payload = await request.body()
    try:
        event = payments.parse_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookVerificationError as e:
        log.warning("Payment webhook rejected: %s", e)
        raise
    except ValueError:
        log.exception("Signed payment webhook has a malformed body")
        return {"received": True}

    log.info("PAYMENT_WEBHOOK %s (%s) session=%s", event.event_type, event.kind, event.session_id)
    try:
        await service.handle_payment_webhook(event)
    except Exception:
        log.exception("Payment webhook processing failed for event %s", event.event_id)
    return {"received": True}


@webhooks_router.post("/entitlement")
async def entitlement_webhook(
    request: Request,
    service: LeadReconciliationService = Depends(get_lead_service),
):
    payload = await request.body()
    try:
        verify_hmac_signature(payload, request.headers.get("x-revenuecat-signature"),
                              settings.revenuecat_webhook_secret)
    except WebhookVerificationError as e:
        log.warning("Entitlement webhook rejected: %s", e)
        raise

    try:
        body = EntitlementWebhook.model_validate_json(payload)
    except ValueError:
        log.exception("Signed entitlement webhook has a malformed body")
        return {"received": True}

    try:
        await service.handle_entitlement_webhook(body.event)
    except Exception:
        log.exception("Entitlement webhook processing failed for event %s", body.event.id)
    return {"received": True}
