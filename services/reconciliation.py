"""Lead-to-entitlement reconciliation.

A lead moves CAPTURED -> IDENTIFIED -> CHECKOUT_STARTED -> CONFIRMED and from
there between the subscription sub-states (active, cancelled, expired,
billing_issue) as entitlement webhooks arrive. The state is derived from the
row's columns rather than stored.

Policies:
- identity failures while capturing or updating a lead degrade: the row is
  written without an identity and the failure is logged
- identities are always create-or-get by email, never blind-created
- ``paid`` only goes back to false through an EXPIRATION webhook
- entitlement grants happen on the unpaid -> paid transition only, under a
  row lock, so replays and racing updates do not grant twice
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from clients.entitlements import EntitlementClient, GrantStrategy
from clients.identity import IdentityClient
from clients.payments import EVENT_COMPLETED, EVENT_EXPIRED, PaymentClient, PaymentEvent
from errors import ExternalServiceError, LeadNotFound, ValidationError
from models.lead import PaymentLead
from plans import get_plan, is_valid_plan_type, plan_for_product_id, resolve_amount
from schemas.webhooks import PURCHASE_EVENTS, EntitlementEvent
from services.lead_store import LeadStore
from utils import as_utc, from_epoch_ms

log = logging.getLogger("quizfunnel")

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_BILLING_ISSUE = "billing_issue"

# Cancelled subscriptions keep access until they expire
PREMIUM_STATUSES = (STATUS_ACTIVE, STATUS_CANCELLED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same_email(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().casefold() == (b or "").strip().casefold()


@dataclass
class SubscriptionStatus:
    is_premium: bool
    status: Optional[str]
    expires_at: Optional[datetime]


@dataclass
class CheckoutResult:
    session_id: str
    url: str


class LeadReconciliationService:
    def __init__(
        self,
        store: LeadStore,
        identity: IdentityClient,
        payments: PaymentClient,
        entitlements: EntitlementClient,
        grants: GrantStrategy,
        frontend_url: str,
    ):
        self.store = store
        self.identity = identity
        self.payments = payments
        self.entitlements = entitlements
        self.grants = grants
        self.frontend_url = frontend_url.rstrip("/")

    # ---------- reads ----------

    async def get_lead(self, lead_id: str) -> PaymentLead:
        lead = await self.store.find_by_id(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)
        return lead

    async def get_lead_by_session(self, session_id: str) -> PaymentLead:
        lead = await self.store.find_by_session_id(session_id)
        if lead is None:
            raise LeadNotFound(session_id)
        return lead

    async def list_leads(self) -> List[PaymentLead]:
        return await self.store.list_all()

    async def list_leads_by_quiz(self, quiz_id: str) -> List[PaymentLead]:
        return await self.store.list_by_quiz_id(quiz_id)

    async def list_paid_leads(self) -> List[PaymentLead]:
        return await self.store.list_paid()

    # ---------- stage 1: email capture ----------

    async def create_lead(
        self,
        email1: str,
        quiz_id: Optional[str] = None,
        quiz_response_id: Optional[str] = None,
    ) -> PaymentLead:
        identity_user_id = None
        try:
            user = await self.identity.create_or_get_user(email1)
            identity_user_id = user.id
        except ExternalServiceError as e:
            log.warning("Identity unavailable for %s, saving lead without one: %s", email1, e)

        lead = await self.store.create(
            email1,
            quiz_id=quiz_id,
            quiz_response_id=quiz_response_id,
            identity_user_id=identity_user_id,
        )
        log.info("LEAD_CREATED %s quiz=%s identity=%s", lead.id, quiz_id, identity_user_id)
        return lead

    async def sign_in_token_for(self, lead: PaymentLead) -> Optional[str]:
        """Token the web funnel hands to the app for automatic login."""
        if not lead.identity_user_id:
            return None
        try:
            return await self.identity.create_sign_in_token(lead.identity_user_id)
        except ExternalServiceError as e:
            log.warning("Sign-in token unavailable for lead %s: %s", lead.id, e)
            return None

    # ---------- stage 2: email after payment/skip ----------

    async def _reconcile_identity(self, lead: PaymentLead, email2: Optional[str]) -> Optional[str]:
        if not email2:
            return lead.identity_user_id

        if lead.identity_user_id:
            current = lead.email2 or lead.email1
            if _same_email(email2, current):
                return lead.identity_user_id
            try:
                await self.identity.change_primary_email(lead.identity_user_id, current, email2)
            except ExternalServiceError as e:
                log.warning("Could not move identity %s to %s: %s", lead.identity_user_id, email2, e)
            return lead.identity_user_id

        try:
            user = await self.identity.create_or_get_user(email2)
        except ExternalServiceError as e:
            log.warning("Identity unavailable for lead %s (%s): %s", lead.id, email2, e)
            return None
        return user.id

    async def _grant_entitlement(
        self,
        lead: PaymentLead,
        identity_user_id: str,
        plan_type: Optional[str],
        email: Optional[str],
        session_id: Optional[str],
    ) -> bool:
        result = await self.grants.grant(
            subscriber_id=identity_user_id,
            plan_type=plan_type,
            email=email,
            session_id=session_id,
        )
        if result.success:
            log.info("ENTITLEMENT_OK lead=%s subscriber=%s via %s", lead.id, identity_user_id, self.grants.name)
        else:
            log.error("ENTITLEMENT_FAILED lead=%s subscriber=%s: %s", lead.id, identity_user_id, result.error)
        return result.success

    async def update_lead(
        self,
        lead_id: str,
        email2: Optional[str],
        plan_type: Optional[str] = None,
        paid: bool = False,
        external_session_id: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> PaymentLead:
        lead = await self.store.find_by_id(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)

        if external_session_id:
            owner = await self.store.find_by_session_id(external_session_id)
            if owner is not None and owner.id != lead.id:
                raise ValidationError("externalSessionId belongs to another lead")

        identity_user_id = await self._reconcile_identity(lead, email2)

        # Re-read under lock: a webhook may have confirmed payment meanwhile
        lead = await self.store.find_by_id(lead_id, for_update=True)
        if lead is None:
            raise LeadNotFound(lead_id)

        was_paid = bool(lead.paid)
        now_paid = was_paid or bool(paid)
        plan_type = plan_type or lead.plan_type

        if was_paid and lead.amount_in_cents is not None:
            amount_in_cents = lead.amount_in_cents
        else:
            amount_in_cents = resolve_amount(plan_type)

        if now_paid:
            paid_at = lead.paid_at or _now()
        else:
            paid_at = None

        fields: Dict[str, Any] = {
            "email2": email2,
            "plan_type": plan_type,
            "paid": now_paid,
            "amount_in_cents": amount_in_cents,
            "paid_at": paid_at,
            "device_type": device_type,
            "identity_user_id": lead.identity_user_id or identity_user_id,
        }
        if external_session_id:
            fields["external_session_id"] = external_session_id

        identity_user_id = fields["identity_user_id"]
        if now_paid and not was_paid and identity_user_id:
            granted = await self._grant_entitlement(
                lead,
                identity_user_id,
                plan_type,
                email2 or lead.email1,
                external_session_id or lead.external_session_id,
            )
            if granted:
                fields["subscriber_id"] = identity_user_id

        lead = await self.store.update(lead_id, **fields)
        log.info("LEAD_UPDATED %s paid=%s plan=%s identity=%s", lead.id, lead.paid, lead.plan_type,
                 lead.identity_user_id)
        return lead

    # ---------- checkout ----------

    async def start_checkout(self, lead_id: str, plan_type: str) -> CheckoutResult:
        plan = get_plan(plan_type)
        lead = await self.store.find_by_id(lead_id)
        if lead is None:
            raise ValidationError("Lead not found")
        if lead.paid:
            raise ValidationError("Lead has already paid")

        session = await self.payments.create_checkout_session(
            plan=plan,
            lead_id=lead.id,
            email=lead.email2 or lead.email1,
            success_url=f"{self.frontend_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}&lead_id={lead.id}",
            cancel_url=f"{self.frontend_url}/checkout/cancel?lead_id={lead.id}",
        )
        await self.store.update(lead.id, external_session_id=session.session_id, plan_type=plan.key)
        log.info("CHECKOUT_STARTED lead=%s session=%s plan=%s", lead.id, session.session_id, plan.key)
        return CheckoutResult(session_id=session.session_id, url=session.url)

    # ---------- subscription status ----------

    async def check_subscription_status(self, lead_id: str) -> SubscriptionStatus:
        lead = await self.get_lead(lead_id)
        expires_at = as_utc(lead.subscription_expires_at)
        not_expired = expires_at is None or expires_at > _now()
        return SubscriptionStatus(
            is_premium=bool(lead.paid) and lead.subscription_status in PREMIUM_STATUSES and not_expired,
            status=lead.subscription_status,
            expires_at=expires_at,
        )

    async def check_live_entitlement(self, lead_id: str) -> Dict[str, Any]:
        lead = await self.get_lead(lead_id)
        subscriber_id = lead.subscriber_id or lead.identity_user_id
        if not subscriber_id:
            return {"subscriberId": None, "active": False}
        active = await self.entitlements.has_active_entitlement(subscriber_id)
        return {"subscriberId": subscriber_id, "active": active}

    async def revoke_entitlement(self, lead_id: str) -> None:
        """Revoke a promotional grant upstream.

        The row is left alone; the provider's EXPIRATION webhook updates it.
        """
        lead = await self.get_lead(lead_id)
        subscriber_id = lead.subscriber_id or lead.identity_user_id
        if not subscriber_id:
            raise ValidationError("Lead has no entitlement subscriber")
        if not self.grants.revocable:
            raise ValidationError(f"Entitlements granted via '{self.grants.name}' cannot be revoked here")
        await self.grants.revoke(subscriber_id)
        log.info("ENTITLEMENT_REVOKE_REQUESTED lead=%s subscriber=%s", lead.id, subscriber_id)

    # ---------- payment provider webhook ----------

    async def handle_payment_webhook(self, event: PaymentEvent) -> None:
        if event.kind == EVENT_EXPIRED:
            log.info("CHECKOUT_EXPIRED session=%s lead=%s", event.session_id, event.lead_id)
            return
        if event.kind != EVENT_COMPLETED:
            log.info("Payment event %s ignored (%s)", event.event_type, event.kind)
            return

        lead = None
        if event.session_id:
            lead = await self.store.find_by_session_id(event.session_id)
        if lead is None and event.lead_id:
            lead = await self.store.find_by_id(event.lead_id)
        if lead is None:
            log.warning("No lead for completed checkout session=%s lead=%s", event.session_id, event.lead_id)
            return

        lead = await self.store.find_by_id(lead.id, for_update=True)
        if lead.paid and event.transaction_id and lead.external_transaction_id == event.transaction_id:
            log.info("Checkout %s already applied to lead %s", event.session_id, lead.id)
            return

        was_paid = bool(lead.paid)
        plan_type = event.plan_type if is_valid_plan_type(event.plan_type) else lead.plan_type
        fields: Dict[str, Any] = {
            "paid": True,
            "paid_at": lead.paid_at or _now(),
            "plan_type": plan_type,
            "external_session_id": event.session_id or lead.external_session_id,
            "external_transaction_id": event.transaction_id or lead.external_transaction_id,
        }
        if event.amount_in_cents is not None:
            fields["amount_in_cents"] = event.amount_in_cents
        elif lead.amount_in_cents is None:
            fields["amount_in_cents"] = resolve_amount(plan_type)

        if not was_paid and lead.identity_user_id:
            granted = await self._grant_entitlement(
                lead,
                lead.identity_user_id,
                plan_type,
                lead.email2 or lead.email1,
                fields["external_session_id"],
            )
            if granted:
                fields["subscriber_id"] = lead.identity_user_id

        lead = await self.store.update(lead.id, **fields)
        log.info("PAYMENT_CONFIRMED lead=%s session=%s amount=%s", lead.id, event.session_id, lead.amount_in_cents)

    # ---------- entitlement provider webhook ----------

    async def _find_lead_for_subscriber(self, event: EntitlementEvent) -> Optional[PaymentLead]:
        candidates = [event.app_user_id, event.original_app_user_id, *event.aliases]
        seen = set()
        for subscriber_id in candidates:
            if not subscriber_id or subscriber_id in seen:
                continue
            seen.add(subscriber_id)
            lead = await self.store.find_by_subscriber_id(subscriber_id)
            if lead is None:
                lead = await self.store.find_by_identity_user_id(subscriber_id)
            if lead is not None:
                return lead
        return None

    async def handle_entitlement_webhook(self, event: EntitlementEvent) -> None:
        log.info("ENTITLEMENT_EVENT %s for %s", event.type, event.app_user_id)

        lead = await self._find_lead_for_subscriber(event)
        if lead is None:
            log.info("No lead found for subscriber %s", event.app_user_id)
            return

        # Re-read under lock: updateLead may be writing the same row
        lead = await self.store.find_by_id(lead.id, for_update=True)
        plan_type = plan_for_product_id(event.product_id) or lead.plan_type

        if event.type in PURCHASE_EVENTS:
            fields: Dict[str, Any] = {
                "paid": True,
                "paid_at": lead.paid_at or _now(),
                "plan_type": plan_type,
                "subscription_status": STATUS_ACTIVE,
                "subscription_expires_at": from_epoch_ms(event.expiration_at_ms),
                # An alias match must not replace the identity-linked subscriber
                "subscriber_id": lead.subscriber_id or event.app_user_id,
                "external_transaction_id": event.transaction_id or lead.external_transaction_id,
            }
            amount = event.amount_in_cents
            if amount is not None:
                fields["amount_in_cents"] = amount
            elif lead.amount_in_cents is None:
                fields["amount_in_cents"] = resolve_amount(plan_type)
            await self.store.update(lead.id, **fields)
            log.info("Payment confirmed for lead %s", lead.id)

        elif event.type == "CANCELLATION":
            await self.store.update(lead.id, subscription_status=STATUS_CANCELLED)
            log.info("Subscription cancelled for lead %s", lead.id)

        elif event.type == "UNCANCELLATION":
            await self.store.update(lead.id, subscription_status=STATUS_ACTIVE)
            log.info("Subscription reactivated for lead %s", lead.id)

        elif event.type == "EXPIRATION":
            await self.store.update(lead.id, subscription_status=STATUS_EXPIRED, paid=False, paid_at=None)
            log.info("Subscription expired for lead %s", lead.id)

        elif event.type == "BILLING_ISSUE":
            await self.store.update(lead.id, subscription_status=STATUS_BILLING_ISSUE)
            log.info("Billing issue for lead %s", lead.id)

        elif event.type == "PRODUCT_CHANGE":
            await self.store.update(lead.id, plan_type=plan_type, subscription_status=STATUS_ACTIVE)
            log.info("Plan changed for lead %s -> %s", lead.id, plan_type)

        else:
            log.info("Unhandled entitlement event type: %s", event.type)
