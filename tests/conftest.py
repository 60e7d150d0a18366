import hashlib
import hmac
import json
import time
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models.lead  # noqa: F401
from clients.entitlements import GrantResult
from clients.identity import EmailAddress, IdentityUser
from clients.payments import CheckoutSession, PaymentClient
from db import Base
from errors import ExternalServiceError
from services.lead_store import LeadStore
from services.reconciliation import LeadReconciliationService

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


class FakeIdentity:
    """In-memory identity provider keyed by user id."""

    def __init__(self):
        self.users = {}
        self.fail = False
        self.created = 0
        self.email_changes = []

    def _check(self):
        if self.fail:
            raise ExternalServiceError("identity", "identity provider down", upstream_status=503)

    async def create_or_get_user(self, email: str) -> IdentityUser:
        self._check()
        for user in self.users.values():
            if user.find_email(email):
                return user
        self.created += 1
        user_id = f"user_{self.created}"
        addr = EmailAddress(id=f"idn_{user_id}_1", email=email)
        user = IdentityUser(id=user_id, email_addresses=[addr], primary_email_address_id=addr.id)
        self.users[user_id] = user
        return user

    async def change_primary_email(self, user_id: str, old_email: str, new_email: str) -> IdentityUser:
        self._check()
        user = self.users[user_id]
        addr = EmailAddress(id=f"idn_{user_id}_{len(user.email_addresses) + 1}", email=new_email)
        user.email_addresses = [
            a for a in user.email_addresses if a.email.casefold() != old_email.casefold()
        ] + [addr]
        user.primary_email_address_id = addr.id
        self.email_changes.append((user_id, old_email, new_email))
        return user

    async def create_sign_in_token(self, user_id: str) -> str:
        self._check()
        return f"sit_{user_id}"


class FakeGrants:
    name = "promotional"
    revocable = True

    def __init__(self):
        self.calls: List[dict] = []
        self.revoked: List[str] = []
        self.succeed = True

    async def grant(self, *, subscriber_id, plan_type=None, email=None, session_id=None) -> GrantResult:
        self.calls.append(
            {"subscriber_id": subscriber_id, "plan_type": plan_type, "email": email, "session_id": session_id}
        )
        if not self.succeed:
            return GrantResult(success=False, error="entitlement provider down")
        return GrantResult(success=True, subscriber={})

    async def revoke(self, subscriber_id: str) -> None:
        self.revoked.append(subscriber_id)


class FakePayments(PaymentClient):
    """Real webhook verification, canned checkout sessions."""

    def __init__(self):
        super().__init__("sk_test_fake", STRIPE_WEBHOOK_SECRET)
        self.sessions: List[dict] = []
        self.fail = False

    async def create_checkout_session(self, *, plan, lead_id, email, success_url, cancel_url) -> CheckoutSession:
        if self.fail:
            raise ExternalServiceError("payment", "Unable to create checkout session")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({"plan": plan.key, "lead_id": lead_id, "email": email,
                              "success_url": success_url, "cancel_url": cancel_url})
        return CheckoutSession(session_id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")


class FakeEntitlements:
    service = "entitlement"

    def __init__(self):
        self.active = True

    async def has_active_entitlement(self, app_user_id: str) -> bool:
        return self.active


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.".encode("utf-8") + payload
    sig = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def checkout_event(session_id: str, lead_id: str, *, event_type: str = "checkout.session.completed",
                   plan_type: str = "1_month", amount_total: int = 1299,
                   payment_status: str = "paid", payment_intent: str = "pi_test_1") -> bytes:
    return json.dumps(
        {
            "id": f"evt_{session_id}",
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "currency": "usd",
                    "payment_status": payment_status,
                    "payment_intent": payment_intent,
                    "client_reference_id": lead_id,
                    "metadata": {"lead_id": lead_id, "plan_type": plan_type},
                }
            },
        }
    ).encode("utf-8")


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def store(db_session):
    return LeadStore(db_session)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def grants():
    return FakeGrants()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def entitlements():
    return FakeEntitlements()


@pytest.fixture
def service(store, identity, payments, entitlements, grants):
    return LeadReconciliationService(
        store=store,
        identity=identity,
        payments=payments,
        entitlements=entitlements,
        grants=grants,
        frontend_url="https://quiz.example.com",
    )


@pytest_asyncio.fixture
async def api(db_session, identity, payments, entitlements, grants):
    from dependencies import (
        get_entitlement_client,
        get_grant_strategy,
        get_identity_client,
        get_payment_client,
    )
    from db import get_db
    from main import app

    async def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_identity_client] = lambda: identity
    app.dependency_overrides[get_payment_client] = lambda: payments
    app.dependency_overrides[get_entitlement_client] = lambda: entitlements
    app.dependency_overrides[get_grant_strategy] = lambda: grants

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
