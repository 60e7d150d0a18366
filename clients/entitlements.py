"""RevenueCat REST client and the two ways we hand out premium access.

Flow for a web purchase:
1. the buyer already has a Clerk identity; its id is the RevenueCat app_user_id
2. GET /subscribers/{id} creates the subscriber if needed (same as
   Purchases.logIn in the app SDK)
3. the $email attribute is set so downstream integrations can match the buyer
4. access is granted either as a promotional entitlement for the plan's
   duration, or by posting the Stripe checkout session as a receipt and
   letting RevenueCat verify it against its own product mapping
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

from clients.http import ApiClient
from errors import ExternalServiceError
from plans import duration_for

log = logging.getLogger("quizfunnel")


def _path_id(value: str) -> str:
    return quote(value, safe="")


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class EntitlementClient(ApiClient):
    service = "entitlement"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        entitlement_id: str = "Premium Courses",
        stripe_public_key: str = "",
        **kwargs,
    ):
        super().__init__(base_url, api_key, **kwargs)
        self.entitlement_id = entitlement_id
        self.stripe_public_key = stripe_public_key

    async def get_or_create_subscriber(self, app_user_id: str) -> Dict[str, Any]:
        r = await self.request("GET", f"/subscribers/{_path_id(app_user_id)}")
        self.raise_for_status(r, "get or create subscriber")
        log.info("SUBSCRIBER_READY %s", app_user_id)
        return r.json()

    async def set_subscriber_attributes(self, app_user_id: str, email: Optional[str] = None) -> None:
        attributes: Dict[str, Dict[str, str]] = {}
        if email:
            attributes["$email"] = {"value": email}
        if not attributes:
            return

        # Setting attributes does not create the subscriber; call get_or_create first
        r = await self.request(
            "POST",
            f"/subscribers/{_path_id(app_user_id)}/attributes",
            json={"attributes": attributes},
        )
        self.raise_for_status(r, "set subscriber attributes")

    async def grant_promotional(self, app_user_id: str, duration: str) -> Dict[str, Any]:
        r = await self.request(
            "POST",
            f"/subscribers/{_path_id(app_user_id)}/entitlements/{_path_id(self.entitlement_id)}/promotional",
            json={"duration": duration},
        )
        self.raise_for_status(r, "grant promotional entitlement")
        log.info("ENTITLEMENT_GRANTED %s (%s) to %s", self.entitlement_id, duration, app_user_id)
        return r.json()

    async def record_receipt(self, app_user_id: str, fetch_token: str, email: Optional[str] = None) -> Dict[str, Any]:
        if not self.stripe_public_key:
            raise ExternalServiceError(self.service, "Stripe app public key not configured")

        body: Dict[str, Any] = {"app_user_id": app_user_id, "fetch_token": fetch_token}
        if email:
            body["attributes"] = {"$email": {"value": email}}

        r = await self.request(
            "POST",
            "/receipts",
            json=body,
            headers={"Authorization": f"Bearer {self.stripe_public_key}", "X-Platform": "stripe"},
        )
        self.raise_for_status(r, "record receipt")
        log.info("RECEIPT_RECORDED %s for %s", fetch_token, app_user_id)
        return r.json()

    async def revoke_promotional(self, app_user_id: str) -> None:
        r = await self.request(
            "POST",
            f"/subscribers/{_path_id(app_user_id)}/entitlements/{_path_id(self.entitlement_id)}/revoke_promotionals",
        )
        self.raise_for_status(r, "revoke promotional entitlement")
        log.info("ENTITLEMENT_REVOKED %s from %s", self.entitlement_id, app_user_id)

    async def has_active_entitlement(self, app_user_id: str) -> bool:
        data = await self.get_or_create_subscriber(app_user_id)
        entitlements = (data.get("subscriber") or {}).get("entitlements") or {}
        entitlement = entitlements.get(self.entitlement_id)
        if not entitlement:
            return False
        expires = _parse_date(entitlement.get("expires_date"))
        # No expiry means lifetime
        return expires is None or expires > datetime.now(timezone.utc)


@dataclass
class GrantResult:
    success: bool
    error: Optional[str] = None
    subscriber: Optional[Dict[str, Any]] = None


class GrantStrategy:
    """Get-or-create the subscriber, tag it with an email, then grant access.

    ``grant`` never raises; callers treat a failed result as non-fatal.
    """

    name = "base"
    revocable = False

    def __init__(self, client: EntitlementClient):
        self.client = client

    def _precheck(self, plan_type: Optional[str], session_id: Optional[str]) -> Optional[str]:
        return None

    async def _grant(self, subscriber_id: str, plan_type: Optional[str], email: Optional[str],
                     session_id: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError

    async def grant(
        self,
        *,
        subscriber_id: str,
        plan_type: Optional[str] = None,
        email: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> GrantResult:
        error = self._precheck(plan_type, session_id)
        if error:
            log.error("Entitlement grant skipped for %s: %s", subscriber_id, error)
            return GrantResult(success=False, error=error)

        try:
            await self.client.get_or_create_subscriber(subscriber_id)
            if email:
                try:
                    await self.client.set_subscriber_attributes(subscriber_id, email)
                except ExternalServiceError as e:
                    log.warning("Could not set email attribute for %s: %s", subscriber_id, e)
            data = await self._grant(subscriber_id, plan_type, email, session_id)
        except ExternalServiceError as e:
            log.error("Entitlement grant failed for %s: %s", subscriber_id, e)
            return GrantResult(success=False, error=str(e))

        return GrantResult(success=True, subscriber=data)

    async def revoke(self, subscriber_id: str) -> None:
        raise ExternalServiceError(self.client.service, f"{self.name} grants cannot be revoked")


class PromotionalGrantStrategy(GrantStrategy):
    name = "promotional"
    revocable = True

    def _precheck(self, plan_type, session_id):
        if not duration_for(plan_type):
            return f"Unknown plan type: {plan_type}"
        return None

    async def _grant(self, subscriber_id, plan_type, email, session_id):
        return await self.client.grant_promotional(subscriber_id, duration_for(plan_type))

    async def revoke(self, subscriber_id: str) -> None:
        await self.client.revoke_promotional(subscriber_id)


class ReceiptGrantStrategy(GrantStrategy):
    name = "receipt"

    def _precheck(self, plan_type, session_id):
        if not session_id:
            return "No checkout session id to submit as a receipt"
        return None

    async def _grant(self, subscriber_id, plan_type, email, session_id):
        return await self.client.record_receipt(subscriber_id, session_id, email)


_STRATEGIES = {
    PromotionalGrantStrategy.name: PromotionalGrantStrategy,
    ReceiptGrantStrategy.name: ReceiptGrantStrategy,
}


def build_grant_strategy(name: str, client: EntitlementClient) -> GrantStrategy:
    try:
        return _STRATEGIES[name](client)
    except KeyError:
        raise ValueError(f"Unknown entitlement strategy '{name}'")
