from fastapi import APIRouter, Depends

from dependencies import get_lead_service
from schemas.lead import CheckoutCreate
from services.reconciliation import LeadReconciliationService

checkout_router = APIRouter()


@checkout_router.post("/checkout")
async def create_checkout(body: CheckoutCreate, service: LeadReconciliationService = Depends(get_lead_service)):
    # Unknown plan / missing lead -> 400, provider failure -> 502 (see main.py handlers)
    result = await service.start_checkout(body.leadId, body.planType)
    return {"sessionId": result.session_id, "url": result.url}
