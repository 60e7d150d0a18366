from typing import Any, Dict

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request

from auth_tokens import ACCESS_TOKEN, OPERATOR_ROLE, decode_token
from dependencies import get_lead_service
from models.lead import PaymentLead
from routers.leads import _iso, lead_projection
from services.reconciliation import LeadReconciliationService


def _get_access_token(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return request.cookies.get("access_token")


def require_operator(request: Request) -> str:
    token = _get_access_token(request)
    if not token:
        raise HTTPException(401, "Missing access token")

    try:
        payload = decode_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(401, "Invalid access token")

    if payload.get("type") != ACCESS_TOKEN:
        raise HTTPException(401, "Not an access token")
    if payload.get("role") != OPERATOR_ROLE:
        raise HTTPException(403, "Operator access required")
    return str(payload["sub"])


admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_operator)])


def _admin_projection(lead: PaymentLead) -> Dict[str, Any]:
    out = lead_projection(lead)
    out.update(
        {
            "externalSessionId": lead.external_session_id,
            "externalTransactionId": lead.external_transaction_id,
            "subscriberId": lead.subscriber_id,
            "deviceType": lead.device_type,
            "updatedAt": _iso(lead.updated_at),
        }
    )
    return out


@admin_router.get("/leads")
async def list_leads(service: LeadReconciliationService = Depends(get_lead_service)):
    return [_admin_projection(lead) for lead in await service.list_leads()]


@admin_router.get("/leads/paid")
async def list_paid_leads(service: LeadReconciliationService = Depends(get_lead_service)):
    return [_admin_projection(lead) for lead in await service.list_paid_leads()]


@admin_router.get("/leads/quiz/{quiz_id}")
async def list_leads_by_quiz(quiz_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    return [_admin_projection(lead) for lead in await service.list_leads_by_quiz(quiz_id)]


@admin_router.get("/leads/{lead_id}/entitlement")
async def live_entitlement(lead_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    return await service.check_live_entitlement(lead_id)


@admin_router.post("/leads/{lead_id}/revoke-entitlement")
async def revoke_entitlement(lead_id: str, service: LeadReconciliationService = Depends(get_lead_service)):
    await service.revoke_entitlement(lead_id)
    return {"ok": True}
