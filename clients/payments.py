"""Stripe Checkout: session creation and normalized webhook events."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from errors import ExternalServiceError, ValidationError, WebhookVerificationError
from plans import Plan

log = logging.getLogger("quizfunnel")

EVENT_COMPLETED = "completed"
EVENT_EXPIRED = "expired"
EVENT_PENDING = "pending"
EVENT_IGNORED = "ignored"

_COMPLETED_TYPES = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
_PAID_STATUSES = ("paid", "no_payment_required")


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class PaymentEvent:
    kind: str
    event_type: str
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    lead_id: Optional[str] = None
    plan_type: Optional[str] = None
    amount_in_cents: Optional[int] = None
    currency: Optional[str] = None


def _as_id(value: Any) -> Optional[str]:
    # Expanded objects arrive as dicts, collapsed ones as plain ids
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class PaymentClient:
    service = "payment"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 1,
        tolerance: int = 300,
        stripe_client: Optional[stripe.StripeClient] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.max_retries = max_retries
        self.tolerance = tolerance
        self._stripe = stripe_client

    @property
    def stripe(self) -> stripe.StripeClient:
        if self._stripe is None:
            if not self.secret_key:
                raise ExternalServiceError(self.service, "Stripe secret key not configured")
            self._stripe = stripe.StripeClient(
                self.secret_key,
                max_network_retries=self.max_retries,
                http_client=stripe.HTTPXClient(timeout=self.timeout),
            )
        return self._stripe

    async def create_checkout_session(
        self,
        *,
        plan: Plan,
        lead_id: str,
        email: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not plan.price_id:
            raise ValidationError(f"Plan '{plan.key}' is not configured for checkout")

        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": plan.price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": lead_id,
            "metadata": {"lead_id": lead_id, "plan_type": plan.key},
        }
        if email:
            params["customer_email"] = email

        try:
            session = await self.stripe.checkout.sessions.create_async(params=params)
        except stripe.StripeError as exc:
            log.error("Stripe checkout session creation failed: %s", exc)
            raise ExternalServiceError(self.service, "Unable to create checkout session") from exc

        log.info("CHECKOUT_SESSION %s for lead %s (%s)", session.id, lead_id, plan.key)
        return CheckoutSession(session_id=session.id, url=session.url or "")

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> str:
        if not self.webhook_secret:
            raise WebhookVerificationError("Payment webhook secret not configured")
        if not signature:
            raise WebhookVerificationError("Missing payment signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            raise WebhookVerificationError() from exc
        return text

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """Verify the Stripe-Signature header, then normalize the event.

        Raises WebhookVerificationError on a bad signature and ValueError on a
        signed but malformed body.
        """
        event = json.loads(self.verify_signature(payload, signature))
        return self.normalize_event(event)

    @staticmethod
    def normalize_event(event: Dict[str, Any]) -> PaymentEvent:
        """Raises ValueError when the event is not a Stripe event object."""
        if not isinstance(event, dict):
            raise ValueError("Payment event is not an object")
        data = event.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Payment event data is not an object")
        obj = data.get("object") or {}
        if not isinstance(obj, dict):
            raise ValueError("Payment event data.object is not an object")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            metadata = {}

        event_type = event.get("type") or ""

        if event_type in _COMPLETED_TYPES:
            kind = EVENT_COMPLETED if obj.get("payment_status") in _PAID_STATUSES else EVENT_PENDING
        elif event_type == "checkout.session.expired":
            kind = EVENT_EXPIRED
        else:
            kind = EVENT_IGNORED

        transaction_id = (
            _as_id(obj.get("payment_intent"))
            or _as_id(obj.get("subscription"))
            or _as_id(obj.get("invoice"))
        )
        amount = obj.get("amount_total")

        return PaymentEvent(
            kind=kind,
            event_type=event_type,
            event_id=event.get("id"),
            session_id=obj.get("id"),
            transaction_id=transaction_id,
            lead_id=metadata.get("lead_id") or obj.get("client_reference_id"),
            plan_type=metadata.get("plan_type"),
            amount_in_cents=int(amount) if amount is not None else None,
            currency=obj.get("currency"),
        )
