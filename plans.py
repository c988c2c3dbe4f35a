from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

UNLIMITED = -1


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Plan:
    tier: PlanTier
    name: str
    quota: int
    price: int
    currency: str
    features: tuple[str, ...]

    @property
    def is_paid(self) -> bool:
        return self.tier is not PlanTier.FREE


PLANS: dict[PlanTier, Plan] = {
    PlanTier.FREE: Plan(
        tier=PlanTier.FREE,
        name="Free",
        quota=10,
        price=0,
        currency="usd",
        features=(
            "10 AI replies per month",
            "Community support",
            "All languages",
        ),
    ),
    PlanTier.BASIC: Plan(
        tier=PlanTier.BASIC,
        name="Basic",
        quota=100,
        price=499,
        currency="usd",
        features=(
            "100 AI replies per month",
            "Email support",
            "Reply history",
            "All languages and tones",
        ),
    ),
    PlanTier.PREMIUM: Plan(
        tier=PlanTier.PREMIUM,
        name="Premium",
        quota=500,
        price=1499,
        currency="usd",
        features=(
            "500 AI replies per month",
            "Priority support",
            "Advanced statistics",
            "Data export",
            "API integrations",
        ),
    ),
    PlanTier.ENTERPRISE: Plan(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        quota=UNLIMITED,
        price=4999,
        currency="usd",
        features=(
            "Unlimited AI replies",
            "24/7 phone support",
            "Dedicated manager",
            "Custom integrations",
            "Guaranteed SLA",
        ),
    ),
}


def normalize_tier(value: str | PlanTier | None) -> PlanTier:
    """Map a stored or requested plan name onto a tier, defaulting to free."""
    if isinstance(value, PlanTier):
        return value
    return parse_tier(value) or PlanTier.FREE


def parse_tier(value: str | None) -> PlanTier | None:
    """Strict counterpart of ``normalize_tier``: unknown names give None."""
    if not value:
        return None
    try:
        return PlanTier(value.strip().lower())
    except ValueError:
        return None


def parse_paid_tier(value: str | None) -> PlanTier | None:
    tier = parse_tier(value)
    return tier if tier is not PlanTier.FREE else None


def get_plan(tier: str | PlanTier | None) -> Plan:
    return PLANS[normalize_tier(tier)]


def public_plans() -> list[dict[str, Any]]:
    return [
        {
            "id": plan.tier.value,
            "name": plan.name,
            "price": plan.price,
            "currency": plan.currency,
            "requests": plan.quota,
            "features": list(plan.features),
        }
        for plan in PLANS.values()
    ]
