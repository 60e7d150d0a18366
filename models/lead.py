import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentLead(Base):
    __tablename__ = "payment_leads"

    id = Column(String(36), primary_key=True, default=_uuid)

    # Captured before payment; never changes afterwards
    email1 = Column(String, nullable=False)
    # Captured after payment/skip; may differ from email1
    email2 = Column(String, nullable=True)

    quiz_id = Column(String, index=True, nullable=True)
    quiz_response_id = Column(String, nullable=True)

    plan_type = Column(String, nullable=True)
    paid = Column(Boolean, nullable=False, default=False)
    amount_in_cents = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    identity_user_id = Column(String, index=True, nullable=True)
    subscriber_id = Column(String, index=True, nullable=True)
    external_session_id = Column(String, unique=True, nullable=True)
    external_transaction_id = Column(String, nullable=True)

    # active | cancelled | expired | billing_issue
    subscription_status = Column(String, nullable=True)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)

    device_type = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=True)
