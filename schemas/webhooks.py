from typing import List, Optional

from pydantic import BaseModel, ConfigDict

PURCHASE_EVENTS = ("INITIAL_PURCHASE", "RENEWAL", "NON_RENEWING_PURCHASE")


class EntitlementEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str
    app_user_id: str
    original_app_user_id: Optional[str] = None
    aliases: List[str] = []
    product_id: Optional[str] = None
    entitlement_ids: Optional[List[str]] = None
    transaction_id: Optional[str] = None
    price: Optional[float] = None
    price_in_purchased_currency: Optional[float] = None
    currency: Optional[str] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    environment: Optional[str] = None
    store: Optional[str] = None

    @property
    def amount_in_cents(self) -> Optional[int]:
        price = self.price_in_purchased_currency
        if price is None:
            price = self.price
        if price is None:
            return None
        return int(round(price * 100))


class EntitlementWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    api_version: Optional[str] = None
    event: EntitlementEvent
