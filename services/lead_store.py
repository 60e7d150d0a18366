from typing import Any, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from errors import LeadNotFound
from models.lead import PaymentLead

# Fields that are fixed once the row exists
_IMMUTABLE_FIELDS = frozenset({"id", "email1", "quiz_id", "quiz_response_id", "created_at"})


class LeadStore:
    """Single-row persistence for PaymentLead. Every write commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        email1: str,
        quiz_id: Optional[str] = None,
        quiz_response_id: Optional[str] = None,
        identity_user_id: Optional[str] = None,
    ) -> PaymentLead:
        lead = PaymentLead(
            email1=email1,
            quiz_id=quiz_id,
            quiz_response_id=quiz_response_id,
            identity_user_id=identity_user_id,
            paid=False,
        )
        self.db.add(lead)
        await self.db.commit()
        await self.db.refresh(lead)
        return lead

    async def update(self, lead_id: str, **fields: Any) -> PaymentLead:
        bad = _IMMUTABLE_FIELDS.intersection(fields)
        if bad:
            raise ValueError(f"Cannot update immutable fields: {', '.join(sorted(bad))}")

        lead = await self.find_by_id(lead_id, for_update=True)
        if lead is None:
            raise LeadNotFound(lead_id)

        for name, value in fields.items():
            setattr(lead, name, value)
        await self.db.commit()
        await self.db.refresh(lead)
        return lead

    async def find_by_id(self, lead_id: str, for_update: bool = False) -> Optional[PaymentLead]:
        stmt = select(PaymentLead).where(PaymentLead.id == lead_id)
        if for_update:
            # Reload even if the row is already in the identity map
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_by_session_id(self, session_id: str) -> Optional[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead).where(PaymentLead.external_session_id == session_id)
        )
        return result.scalars().first()

    async def find_by_subscriber_id(self, subscriber_id: str) -> Optional[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead)
            .where(PaymentLead.subscriber_id == subscriber_id)
            .order_by(PaymentLead.created_at.desc())
        )
        return result.scalars().first()

    async def find_by_identity_user_id(self, identity_user_id: str) -> Optional[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead)
            .where(PaymentLead.identity_user_id == identity_user_id)
            .order_by(PaymentLead.created_at.desc())
        )
        return result.scalars().first()

    async def list_all(self) -> List[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead).order_by(PaymentLead.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_by_quiz_id(self, quiz_id: str) -> List[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead)
            .where(PaymentLead.quiz_id == quiz_id)
            .order_by(PaymentLead.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_paid(self) -> List[PaymentLead]:
        result = await self.db.execute(
            select(PaymentLead)
            .where(PaymentLead.paid.is_(True))
            .order_by(PaymentLead.created_at.desc())
        )
        return list(result.scalars().all())
