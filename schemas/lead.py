from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class LeadCreate(BaseModel):
    email1: EmailStr
    quizId: Optional[str] = None
    quizResponseId: Optional[str] = None


class LeadUpdate(BaseModel):
    email2: EmailStr
    planType: Optional[str] = None
    paid: bool
    externalSessionId: Optional[str] = None
    deviceType: Optional[str] = None


class CheckoutCreate(BaseModel):
    leadId: str = Field(..., min_length=1)
    planType: str = Field(..., min_length=1)
