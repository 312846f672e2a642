"""
ECOF Delivery - Destination Registry
====================================
Durable per-destination state (cursor, failure bookkeeping, next retry time)
and the retry backoff policy shared by every pipeline.

The registry is the only synchronization point between workers:
`claim_due` must select and lease rows atomically, skipping rows another
claimant holds, and must never block.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from core.config import Settings

from .models import Destination


def utcnow() -> datetime:
    """Timezone-aware UTC now; the default clock of all stores."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff.

    delay(n) = min(base * multiplier ** min(n - 1, cap_exponent), max_delay)
    for n >= 1 consecutive failures; delay(0) is zero.
    """

    base_seconds: float = 30.0
    multiplier: float = 2.0
    cap_exponent: int = 6
    max_delay_seconds: float = 3600.0

    def delay_seconds(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, self.cap_exponent)
        return min(self.base_seconds * self.multiplier**exponent, self.max_delay_seconds)

    def delay(self, failures: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds(failures))

    def next_retry_at(self, now: datetime, failures: int) -> datetime:
        return now + self.delay(failures)

    @classmethod
    def from_settings(cls, settings: Settings, base_seconds: float | None = None) -> "BackoffPolicy":
        return cls(
            base_seconds=base_seconds if base_seconds is not None else settings.BACKOFF_BASE_SECONDS,
            cap_exponent=settings.BACKOFF_CAP_EXPONENT,
            max_delay_seconds=settings.BACKOFF_MAX_SECONDS,
        )


class DestinationRegistry(Protocol):
    """Storage contract for webhook destinations and their subscriptions."""

    async def claim_due(self, category: str, limit: int, lease_seconds: float) -> list[Destination]:
        """
        Return up to `limit` active destinations of `category` whose
        next_retry_at has passed, oldest-updated first, and lease them by
        moving next_retry_at to now + lease. Rows leased by another
        claimant are skipped, not waited on.
        """
        ...

    async def record_success(self, destination_id: str, new_cursor: int) -> None:
        """Advance the cursor (never backwards) and clear failure state."""
        ...

    async def record_failure(self, destination_id: str, error: str) -> Destination | None:
        """Increment failures, store the error, schedule now + backoff(failures)."""
        ...

    async def release(self, destination_id: str) -> None:
        """Drop the lease without touching the cursor or failure state."""
        ...

    async def get_destination(self, destination_id: str) -> Destination | None: ...

    async def list_destinations(self, category: str | None = None) -> list[Destination]: ...

    async def upsert_destination(
        self,
        org_id: str,
        category: str,
        endpoint: str,
        secret: str,
        is_active: bool = True,
    ) -> Destination: ...

    async def set_active(self, destination_id: str, is_active: bool) -> None: ...

    async def set_subscription(self, org_id: str, category: str, type_code: str, enabled: bool) -> None: ...

    async def is_subscribed(self, org_id: str, category: str, type_code: str) -> bool: ...
