import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from dependencies import get_lead_service
from models.lead import PaymentLead
from schemas.lead import LeadCreate, LeadUpdate
from services.reconciliation import LeadReconciliationService

log = logging.getLogger("quizfunnel")

leads_router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def lead_projection(lead: PaymentLead) -> Dict[str, Any]:
    return {
        "id": lead.id,
        "email1": lead.email1,
        "email2": lead.email2,
        "planType": lead.plan_type,
        "paid": lead.paid,
        "amountInCents": lead.amount_in_cents,
        "paidAt": _iso(lead.paid_at),
        "quizId": lead.quiz_id,
        "quizResponseId": lead.quiz_response_id,
        "identityUserId": lead.identity_user_id,
        "subscriptionStatus": lead.subscription_status,
        "subscriptionExpiresAt": _iso(lead.subscription_expires_at),
        "createdAt": _iso(lead.created_at),
    }


@leads_router.post("/leads", status_code=201)
async def create_lead(
    body: LeadCreate,
    request: Request,
    service: LeadReconciliationService = Depends(get_lead_service),
):
    log.info("LEADS_ENDPOINT_HIT %s %s from=%s", request.method, request.url.path,
             request.client.host if request.client else None)

    lead = await service.create_lead(body.email1, quiz_id=body.quizId, quiz_response_id=body.quizResponseId)
    sign_in_token = await service.sign_in_token_for(lead)

    return {
        "id": lead.id,
        "email1": lead.email1,
        "quizId": lead.quiz_id,
        # Doubles as the entitlement app_user_id on the client
        "identityUserId": lead.identity_user_id,
        "signInToken": sign_in_token,
    }


@leads_router.patch("/leads/{lead_id}")
async def update_lead(
    lead_id: str,
    body: LeadUpdate,
    service: LeadReconciliationService = Depends(get_lead_service),
):
    lead = await service.update_lead(
        lead_id,
        email2=body.email2,
        plan_type=body.planType,
        paid=body.paid,
        external_session_id=body.externalSessionId,
        device_type=body.deviceType,
    )
    return {
        "id": lead.id,
        "email1": lead.email1,
        "email2": lead.email2,
        "planType": lead.plan_type,
        "paid": lead.paid,
    }


@leads_router.get("/leads/session/{session_id}")
async def get_lead_by_session(session_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    lead = await service.get_lead_by_session(session_id)
    return lead_projection(lead)


@leads_router.get("/leads/{lead_id}")
async def get_lead(lead_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    lead = await service.get_lead(lead_id)
    return lead_projection(lead)


@leads_router.get("/leads/{lead_id}/subscription")
async def check_subscription(lead_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    status = await service.check_subscription_status(lead_id)
    return {
        "isPremium": status.is_premium,
        "status": status.status,
        "expiresAt": _iso(status.expires_at),
    }
