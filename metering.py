from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable

from alerts import Alerter
from entitlements import current_period, monthly_limit, next_reset_at
from errors import InternalError, StorageError
from generation import AUDIT_TEXT_LIMIT, GenerationResult
from plans import UNLIMITED

logger = logging.getLogger("reviewreply.metering")


def usage_summary(current: int, limit: int) -> dict[str, int]:
    if limit == UNLIMITED:
        return {"current": current, "limit": limit, "remaining": -1, "percentage": 0}
    percentage = round(current / limit * 100) if limit > 0 else 100
    return {
        "current": current,
        "limit": limit,
        "remaining": max(0, limit - current),
        "percentage": percentage,
    }


def build_audit_record(
    user_id: str,
    review_text: str,
    result: GenerationResult,
    *,
    language: str,
    tone: str,
    business_type: str,
) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "review_text": review_text[:AUDIT_TEXT_LIMIT],
        "response_text": result.text[:AUDIT_TEXT_LIMIT],
        "language": language,
        "tone": tone,
        "business_type": business_type,
        "model": result.model,
        "input_tokens": result.input_tokens,
        "output_tokens": result.output_tokens,
        "tokens_used": result.tokens_used,
        "cost": result.cost,
        "duration_ms": result.duration_ms,
        "success": result.success,
        "error": result.error,
    }


class UsageMeter:
    """Monthly request counters keyed by (user, month, year)."""

    def __init__(self, store: Any, clock: Callable[[], datetime], alerter: Alerter) -> None:
        self._store = store
        self._clock = clock
        self._alerter = alerter

    def record_usage(self, user_id: str, month: int, year: int) -> dict[str, Any]:
        return self._store.increment_usage(user_id, month, year, 1)

    def record_generation(
        self,
        user: dict[str, Any],
        review_text: str,
        result: GenerationResult,
        *,
        month: int,
        year: int,
        language: str,
        tone: str,
        business_type: str,
    ) -> dict[str, Any]:
        """Charge one request and append its audit row.

        Both writes share a transaction. If that fails the request is still
        charged with a bare increment and the lost audit row is alerted.
        """
        record = build_audit_record(
            user["id"],
            review_text,
            result,
            language=language,
            tone=tone,
            business_type=business_type,
        )
        try:
            return self._store.record_generation(month=month, year=year, record=record)
        except StorageError as exc:
            logger.exception("Paired usage/audit write failed for user %s.", user["id"])
            self._alerter.alert(
                "Generation audit record lost",
                f"Audit write failed ({exc}); charging usage without audit. Record: {record!r}",
            )

        try:
            return self.record_usage(user["id"], month, year)
        except StorageError as exc:
            logger.exception("Usage increment failed for user %s.", user["id"])
            self._alerter.alert(
                "Generation usage not recorded",
                f"Usage increment failed ({exc}) for user {user['id']} in {month}/{year}.",
            )
            raise InternalError("Failed to record usage") from exc

    def snapshot(self, user: dict[str, Any]) -> dict[str, Any]:
        now = self._clock()
        month, year = current_period(now)
        current = self._store.get_usage_count(user["id"], month, year)
        summary: dict[str, Any] = usage_summary(current, monthly_limit(user))
        summary["reset_date"] = next_reset_at(now).isoformat()
        return summary
