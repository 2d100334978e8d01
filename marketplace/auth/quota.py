"""Per-API-key request quota."""
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select, update

from marketplace.cost.database import Database
from marketplace.cost.models import ApiKey


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot of a key's quota counter."""

    allowed: bool
    used: int
    limit: Optional[int]

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)


def next_utc_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    tomorrow = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def rate_limit_headers(status: QuotaStatus, now: Optional[datetime] = None) -> Dict[str, str]:
    """
    X-RateLimit-* headers for a proxied response.

    Unlimited keys report a limit and remaining of 0.
    """
    return {
        "X-RateLimit-Limit": str(status.limit or 0),
        "X-RateLimit-Remaining": str(status.remaining or 0),
        "X-RateLimit-Reset": str(int(next_utc_midnight(now).timestamp())),
    }


class QuotaTracker:
    """Reads and increments ApiKey.quota_used."""

    def __init__(self, database: Database):
        self.database = database

    def check(self, api_key_id: uuid.UUID) -> QuotaStatus:
        """
        Check whether the key may make another request.

        Returns:
            QuotaStatus; unlimited when quota_limit is null, otherwise
            allowed iff quota_used < quota_limit. Unknown keys are denied.
        """
        with self.database.session() as session:
            row = session.execute(
                select(ApiKey.quota_used, ApiKey.quota_limit).where(ApiKey.id == api_key_id)
            ).first()

        if row is None:
            return QuotaStatus(allowed=False, used=0, limit=None)
        if row.quota_limit is None:
            return QuotaStatus(allowed=True, used=row.quota_used, limit=None)
        return QuotaStatus(
            allowed=row.quota_used < row.quota_limit,
            used=row.quota_used,
            limit=row.quota_limit,
        )

    def increment(self, api_key_id: uuid.UUID) -> None:
        """Atomic counter update; called once per chargeable request."""
        with self.database.transaction() as session:
            session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key_id)
                .values(quota_used=ApiKey.quota_used + 1)
                .execution_options(synchronize_session=False)
            )
