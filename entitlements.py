from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from errors import QuotaExceeded, SubscriptionExpired
from plans import UNLIMITED, Plan, get_plan


def current_period(now: datetime) -> tuple[int, int]:
    """Return the (month, year) usage key; months are zero-based (0-11)."""
    return now.month - 1, now.year


def next_reset_at(now: datetime) -> datetime:
    """First instant of the next calendar month on the server clock.

    Quotas reset on the server's calendar, not the user's timezone.
    """
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def is_subscription_active(user: dict[str, Any], now: datetime) -> bool:
    plan = get_plan(user.get("subscription_plan"))
    if not plan.is_paid:
        return True
    expires_at = user.get("subscription_expires_at")
    return isinstance(expires_at, datetime) and now < expires_at


def monthly_limit(user: dict[str, Any]) -> int:
    limit = user.get("monthly_limit")
    if limit is None:
        return get_plan(user.get("subscription_plan")).quota
    return int(limit)


@dataclass(frozen=True)
class Entitlement:
    plan: Plan
    limit: int
    current: int
    month: int
    year: int
    reset_at: datetime

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class EntitlementResolver:
    """Decides whether a user may make one more generation call right now."""

    def __init__(self, store: Any, clock: Callable[[], datetime]) -> None:
        self._store = store
        self._clock = clock

    def resolve(self, user: dict[str, Any]) -> Entitlement:
        now = self._clock()
        if not is_subscription_active(user, now):
            raise SubscriptionExpired("Subscription expired")

        month, year = current_period(now)
        usage = self._store.increment_usage(user["id"], month, year, 0)
        current = int(usage["request_count"])
        limit = monthly_limit(user)
        reset_at = next_reset_at(now)
        if limit != UNLIMITED and current >= limit:
            raise QuotaExceeded(
                "Monthly usage limit reached",
                usage={"current": current, "limit": limit, "reset_date": reset_at.isoformat()},
            )
        return Entitlement(
            plan=get_plan(user.get("subscription_plan")),
            limit=limit,
            current=current,
            month=month,
            year=year,
            reset_at=reset_at,
        )
