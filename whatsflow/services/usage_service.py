"""Per-tenant monthly AI response quota.

`consume_usage` is the only write path: one INSERT .. ON CONFLICT DO UPDATE
with a guard, so the limit check and the increment are a single store-side
operation.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.services.result import Result

logger = get_logger("usage_service")

DEFAULT_MONTHLY_LIMIT = 100


class QuotaExceededError(Exception):
    def __init__(self, used: int, limit: int, resets_on: Optional[datetime]):
        self.used = used
        self.limit = limit
        self.resets_on = resets_on
        super().__init__(f"Monthly AI response limit reached: {used}/{limit}")

    def to_dict(self) -> dict:
        return {
            "error": "quota_exceeded",
            "used": self.used,
            "limit": self.limit,
            "resetsOn": self.resets_on.isoformat() if self.resets_on else None,
        }


@dataclass
class UsageStatus:
    allowed: bool
    used: int
    limit: int
    resets_on: Optional[datetime]
    fail_open: bool = False


def first_day_of_next_month(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def _fail_open_status() -> UsageStatus:
    return UsageStatus(allowed=True, used=0, limit=0, resets_on=None, fail_open=True)


def check_usage(db: Session, tenant_id) -> Result[UsageStatus]:
    """Read-only pre-check so exhausted tenants never reach the model."""
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            row = (
                db.execute(
                    text(
                        """
                        SELECT used, monthly_limit, resets_on
                        FROM usage_counters
                        WHERE tenant_id = :tenant_id
                        """
                    ),
                    {"tenant_id": tenant_id},
                )
                .mappings()
                .first()
            )
    except Exception as exc:
        if not settings.quota_fail_open:
            logger.error("Usage check failed", extra={"context": {"tenant_id": str(tenant_id), "error": str(exc)}})
            return Result.failure("Usage check failed", code="usage_check_failed")
        logger.warning(
            "Usage check failed, allowing request",
            extra={"context": {"tenant_id": str(tenant_id), "error": str(exc)}},
        )
        return Result.success(_fail_open_status())

    if row is None:
        return Result.success(
            UsageStatus(allowed=True, used=0, limit=DEFAULT_MONTHLY_LIMIT, resets_on=first_day_of_next_month(now))
        )

    used, limit, resets_on = row["used"], row["monthly_limit"], row["resets_on"]
    if resets_on is not None and resets_on <= now:
        used = 0
        resets_on = first_day_of_next_month(now)

    status = UsageStatus(allowed=used < limit, used=used, limit=limit, resets_on=resets_on)
    if not status.allowed:
        return Result.failure("Monthly AI response limit reached", code="quota_exceeded", status=status)
    return Result.success(status)


def consume_usage(db: Session, tenant_id) -> UsageStatus:
    """Atomically count one reply against the tenant's quota.

    Raises QuotaExceededError when the guard rejects the increment. Runs in a
    savepoint and does not commit: the caller commits it with the reply rows.
    """
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            row = (
                db.execute(
                    text(
                        """
                        INSERT INTO usage_counters AS uc (tenant_id, monthly_limit, used, resets_on, updated_at)
                        VALUES (:tenant_id, :default_limit, 1, :next_reset, NOW())
                        ON CONFLICT (tenant_id) DO UPDATE
                        SET used = CASE WHEN uc.resets_on <= NOW() THEN 1 ELSE uc.used + 1 END,
                            resets_on = CASE WHEN uc.resets_on <= NOW() THEN :next_reset ELSE uc.resets_on END,
                            updated_at = NOW()
                        WHERE uc.resets_on <= NOW()
                           OR uc.used < uc.monthly_limit
                        RETURNING uc.used, uc.monthly_limit, uc.resets_on
                        """
                    ),
                    {
                        "tenant_id": tenant_id,
                        "default_limit": DEFAULT_MONTHLY_LIMIT,
                        "next_reset": first_day_of_next_month(now),
                    },
                )
                .mappings()
                .first()
            )
    except Exception as exc:
        if not settings.quota_fail_open:
            raise
        logger.warning(
            "Usage increment failed, reply not metered",
            extra={"context": {"tenant_id": str(tenant_id), "error": str(exc)}},
        )
        return _fail_open_status()

    if row is None:
        current = check_usage(db, tenant_id)
        status = current.details.get("status") or current.value
        used = status.used if status else 0
        limit = status.limit if status else 0
        raise QuotaExceededError(used, limit, status.resets_on if status else None)

    return UsageStatus(allowed=True, used=row["used"], limit=row["monthly_limit"], resets_on=row["resets_on"])
