from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from errors import UnknownPlanError
from settings import settings

# Durations accepted by RevenueCat promotional grants
DURATIONS = (
    "daily",
    "three_day",
    "weekly",
    "monthly",
    "two_month",
    "three_month",
    "six_month",
    "yearly",
    "lifetime",
)

# Product identifiers sold in the mobile app; the web catalog maps its own.
_APP_PRODUCT_DURATIONS: Dict[str, str] = {
    "new_course_monthly": "monthly",
    "new_course_yearly": "yearly",
    "new_course_quaterly": "three_month",
}


@dataclass(frozen=True)
class Plan:
    key: str
    product_id: str
    amount_cents: int
    label: str
    duration: str
    price_id: str = ""


def _default_plans() -> Dict[str, Plan]:
    return {
        "1_month": Plan(
            key="1_month",
            product_id="new_monthly",
            amount_cents=1299,
            label="1 Month",
            duration="monthly",
            price_id=settings.stripe_price_1_month,
        ),
        "3_month": Plan(
            key="3_month",
            product_id="new_quarterly_web",
            amount_cents=2999,
            label="3 Months",
            duration="three_month",
            price_id=settings.stripe_price_3_month,
        ),
        "1_year": Plan(
            key="1_year",
            product_id="new_yearly_web",
            amount_cents=6999,
            label="1 Year",
            duration="yearly",
            price_id=settings.stripe_price_1_year,
        ),
    }


def _plans_from_config(raw: Mapping[str, Mapping]) -> Dict[str, Plan]:
    plans: Dict[str, Plan] = {}
    for key, entry in raw.items():
        duration = entry.get("duration", "monthly")
        if duration not in DURATIONS:
            raise ValueError(f"Plan '{key}' has unknown duration '{duration}'")
        plans[key] = Plan(
            key=key,
            product_id=str(entry["product_id"]),
            amount_cents=int(entry["amount_cents"]),
            label=str(entry.get("label", key)),
            duration=duration,
            price_id=str(entry.get("price_id", "")),
        )
    return plans


PLANS: Dict[str, Plan] = _plans_from_config(settings.plans) if settings.plans else _default_plans()


def is_valid_plan_type(plan_type: Optional[str]) -> bool:
    return bool(plan_type) and plan_type in PLANS


def get_plan(plan_type: str) -> Plan:
    try:
        return PLANS[plan_type]
    except KeyError:
        raise UnknownPlanError(plan_type, PLANS.keys())


def resolve_amount(plan_type: Optional[str]) -> Optional[int]:
    """Price in cents for a plan key; None when absent or unrecognized."""
    if not is_valid_plan_type(plan_type):
        return None
    return PLANS[plan_type].amount_cents


def plan_for_product_id(product_id: Optional[str]) -> Optional[str]:
    """Best-effort reverse lookup of the entitlement provider's product id."""
    if not product_id:
        return None
    for key, plan in PLANS.items():
        if plan.product_id == product_id:
            return key
    return None


def duration_for(plan_type: Optional[str]) -> Optional[str]:
    if not plan_type:
        return None
    if plan_type in PLANS:
        return PLANS[plan_type].duration
    return _APP_PRODUCT_DURATIONS.get(plan_type)
