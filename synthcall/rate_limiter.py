"""
Daily rate limiter for conversation turns.

One counter per UTC calendar day ("rate_limit_YYYY-MM-DD"). The counter is
created on the first increment of the day and expires with the rate-limit
TTL. When the counter store cannot be reached the check FAILS OPEN: the
turn is allowed and the error is returned for observability.

Python 3.9 compatible - uses typing.Dict, typing.Optional, typing.Tuple
"""

import logging
import time
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from .errors import StoreUnavailable
from .models import RateLimitResult, RateLimitStatus
from .sync_documents import RevisionConflict, SyncDocumentClient

logger = logging.getLogger(__name__)

MAX_DAILY_CALLS = 1000
RATE_LIMIT_TTL_SECONDS = 86400
MAX_REVISION_RETRIES = 5


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def next_midnight_utc(day: date) -> str:
    """ISO timestamp of the midnight that closes the given UTC day."""
    midnight = datetime.combine(day + timedelta(days=1), dt_time(0, 0), tzinfo=timezone.utc)
    return midnight.isoformat().replace("+00:00", "Z")


def rate_limit_key(day: date) -> str:
    return f"rate_limit_{day.isoformat()}"


class CounterBackend(Protocol):
    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> Tuple[bool, int]:
        """Atomically increment when count < limit. Returns (allowed, count after the call)."""
        ...

    async def read(self, key: str) -> int:
        ...


class InMemoryCounterBackend:
    """Process-local counters with expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}

    def _current(self, key: str) -> Optional[int]:
        entry = self._counters.get(key)
        if entry is None:
            return None
        count, expires_at = entry
        if self._clock() >= expires_at:
            del self._counters[key]
            return None
        return count

    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> Tuple[bool, int]:
        # No awaits between read and write: atomic on a single event loop
        count = self._current(key)
        if count is None:
            if limit <= 0:
                return False, 0
            self._counters[key] = (1, self._clock() + ttl_seconds)
            return True, 1
        if count >= limit:
            return False, count
        _, expires_at = self._counters[key]
        self._counters[key] = (count + 1, expires_at)
        return True, count + 1

    async def read(self, key: str) -> int:
        return self._current(key) or 0

    def clear(self) -> None:
        self._counters.clear()


class SyncCounterBackend:
    """Counters stored as Sync documents, incremented with If-Match on the revision."""

    def __init__(self, documents: SyncDocumentClient, max_revision_retries: int = MAX_REVISION_RETRIES):
        self.documents = documents
        self.max_revision_retries = max_revision_retries

    async def increment_if_below(self, key: str, limit: int, ttl_seconds: int) -> Tuple[bool, int]:
        for _ in range(self.max_revision_retries):
            document = await self.documents.fetch(key)
            now = datetime.now(timezone.utc).isoformat()

            if document is None:
                if limit <= 0:
                    return False, 0
                try:
                    await self.documents.create(key, {"count": 1, "lastUpdated": now}, ttl=ttl_seconds)
                    return True, 1
                except RevisionConflict:
                    continue

            count = int(document.data.get("count") or 0)
            if count >= limit:
                return False, count

            try:
                updated = await self.documents.update(
                    key, {"count": count + 1, "lastUpdated": now}, if_match=document.revision
                )
            except RevisionConflict:
                logger.debug(f"Revision conflict on {key}, retrying")
                continue
            if updated is None:
                # Expired between fetch and update; start over with a fresh document
                continue
            return True, count + 1

        raise StoreUnavailable(f"increment {key}", RuntimeError("too many revision conflicts"))

    async def read(self, key: str) -> int:
        document = await self.documents.fetch(key)
        if document is None:
            return 0
        return int(document.data.get("count") or 0)


class RateLimiter:
    """checkAndIncrement against a daily ceiling."""

    def __init__(
        self,
        backend: CounterBackend,
        limit: int = MAX_DAILY_CALLS,
        window_ttl_seconds: int = RATE_LIMIT_TTL_SECONDS,
        today: Callable[[], date] = utc_today,
    ):
        self.backend = backend
        self.limit = limit
        self.window_ttl_seconds = window_ttl_seconds
        self._today = today

    async def check_and_increment(self, day: Optional[date] = None, limit: Optional[int] = None) -> RateLimitResult:
        day = day or self._today()
        limit = self.limit if limit is None else limit
        resets_at = next_midnight_utc(day)

        try:
            allowed, count = await self.backend.increment_if_below(
                rate_limit_key(day), limit, self.window_ttl_seconds
            )
        except Exception as e:
            logger.error(f"Rate limit check failed: {type(e).__name__}: {e}")
            logger.warning("METRIC rate_limit_fail_open - rate limiting unavailable, allowing request")
            return RateLimitResult(allowed=True, currentCount=0, limit=limit, resetsAt=resets_at, error=str(e))

        if allowed:
            logger.info(f"Rate limit OK: {count}/{limit} turns on {day.isoformat()}")
        else:
            logger.warning(f"METRIC rate_limit_exceeded count={count} limit={limit} day={day.isoformat()}")
        return RateLimitResult(allowed=allowed, currentCount=count, limit=limit, resetsAt=resets_at)

    async def get_status(self, day: Optional[date] = None) -> RateLimitStatus:
        """Current usage without incrementing. Store errors propagate."""
        day = day or self._today()
        count = await self.backend.read(rate_limit_key(day))
        return RateLimitStatus(
            currentCount=count,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            resetsAt=next_midnight_utc(day),
        )
