"""
Tests for the daily rate limiter.

These tests verify that:
1. N increments against limit L allow exactly min(N, L)
2. Denied calls do not increment the counter
3. Counters are per UTC day and reset at midnight
4. Store failures fail open with the error attached
5. Sync counters increment with If-Match and retry revision conflicts
"""

from datetime import date
from typing import Any, Dict, Optional

import pytest

from synthcall.rate_limiter import (
    InMemoryCounterBackend,
    RateLimiter,
    SyncCounterBackend,
    next_midnight_utc,
    rate_limit_key,
)
from synthcall.sync_documents import RevisionConflict, SyncDocument

DAY = date(2025, 3, 14)


class BrokenBackend:
    async def increment_if_below(self, key, limit, ttl_seconds):
        raise ConnectionError("Sync unreachable")

    async def read(self, key):
        raise ConnectionError("Sync unreachable")


class FakeCounterDocuments:
    """Sync documents with revisions; can inject If-Match conflicts."""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.revisions: Dict[str, int] = {}
        self.update_conflicts = 0
        self.if_matches = []
        self.ttls: Dict[str, Optional[int]] = {}

    async def fetch(self, key):
        if key not in self.documents:
            return None
        return SyncDocument(unique_name=key, data=dict(self.documents[key]), revision=str(self.revisions[key]))

    async def create(self, key, data, ttl=None):
        if key in self.documents:
            raise RevisionConflict(key)
        self.documents[key] = data
        self.revisions[key] = 0
        self.ttls[key] = ttl
        return SyncDocument(unique_name=key, data=data, revision="0")

    async def update(self, key, data, ttl=None, if_match=None):
        self.if_matches.append(if_match)
        if key not in self.documents:
            return None
        if self.update_conflicts:
            self.update_conflicts -= 1
            # Someone else incremented in between
            self.documents[key] = {"count": self.documents[key]["count"] + 1}
            self.revisions[key] += 1
            raise RevisionConflict(key)
        if if_match is not None and if_match != str(self.revisions[key]):
            raise RevisionConflict(key)
        self.documents[key] = data
        self.revisions[key] += 1
        return SyncDocument(unique_name=key, data=data, revision=str(self.revisions[key]))


class TestHelpers:
    def test_rate_limit_key(self):
        assert rate_limit_key(DAY) == "rate_limit_2025-03-14"

    def test_next_midnight(self):
        assert next_midnight_utc(DAY) == "2025-03-15T00:00:00Z"
        assert next_midnight_utc(date(2024, 12, 31)) == "2025-01-01T00:00:00Z"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_exactly_limit_allowed(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=5, today=lambda: DAY)

        results = [await limiter.check_and_increment() for _ in range(8)]

        assert [r.allowed for r in results] == [True] * 5 + [False] * 3
        assert [r.currentCount for r in results] == [1, 2, 3, 4, 5, 5, 5, 5]

    @pytest.mark.asyncio
    async def test_fewer_requests_than_limit(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=10, today=lambda: DAY)

        results = [await limiter.check_and_increment() for _ in range(3)]

        assert all(r.allowed for r in results)

    @pytest.mark.asyncio
    async def test_1001st_call_denied(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=1000, today=lambda: DAY)
        for _ in range(1000):
            assert (await limiter.check_and_increment()).allowed

        result = await limiter.check_and_increment()

        assert result.allowed is False
        assert result.currentCount == 1000
        assert result.limit == 1000
        assert result.resetsAt == "2025-03-15T00:00:00Z"

    @pytest.mark.asyncio
    async def test_new_day_new_counter(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=1)

        assert (await limiter.check_and_increment(day=DAY)).allowed
        assert not (await limiter.check_and_increment(day=DAY)).allowed
        assert (await limiter.check_and_increment(day=date(2025, 3, 15))).allowed

    @pytest.mark.asyncio
    async def test_limit_override(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=1000, today=lambda: DAY)

        assert (await limiter.check_and_increment(limit=1)).allowed
        result = await limiter.check_and_increment(limit=1)
        assert result.allowed is False
        assert result.limit == 1

    @pytest.mark.asyncio
    async def test_zero_limit_denies_everything(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=0, today=lambda: DAY)
        result = await limiter.check_and_increment()
        assert result.allowed is False
        assert result.currentCount == 0

    @pytest.mark.asyncio
    async def test_fails_open(self):
        limiter = RateLimiter(BrokenBackend(), limit=5, today=lambda: DAY)

        result = await limiter.check_and_increment()

        assert result.allowed is True
        assert result.currentCount == 0
        assert "Sync unreachable" in result.error

    @pytest.mark.asyncio
    async def test_get_status_does_not_increment(self):
        limiter = RateLimiter(InMemoryCounterBackend(), limit=10, today=lambda: DAY)
        for _ in range(3):
            await limiter.check_and_increment()

        status = await limiter.get_status()
        status_again = await limiter.get_status()

        assert status.currentCount == 3
        assert status.remaining == 7
        assert status.resetsAt == "2025-03-15T00:00:00Z"
        assert status_again.currentCount == 3

    @pytest.mark.asyncio
    async def test_counter_expires_with_ttl(self):
        now = [0.0]
        backend = InMemoryCounterBackend(clock=lambda: now[0])
        limiter = RateLimiter(backend, limit=1, window_ttl_seconds=86400, today=lambda: DAY)
        await limiter.check_and_increment()

        now[0] = 86400.0
        assert (await limiter.get_status()).currentCount == 0


class TestSyncCounterBackend:
    @pytest.mark.asyncio
    async def test_first_increment_creates_document_with_ttl(self):
        documents = FakeCounterDocuments()
        backend = SyncCounterBackend(documents)

        allowed, count = await backend.increment_if_below("rate_limit_2025-03-14", 10, 86400)

        assert (allowed, count) == (True, 1)
        assert documents.documents["rate_limit_2025-03-14"]["count"] == 1
        assert documents.ttls["rate_limit_2025-03-14"] == 86400

    @pytest.mark.asyncio
    async def test_increments_with_if_match(self):
        documents = FakeCounterDocuments()
        backend = SyncCounterBackend(documents)
        await backend.increment_if_below("k", 10, 86400)

        allowed, count = await backend.increment_if_below("k", 10, 86400)

        assert (allowed, count) == (True, 2)
        assert documents.if_matches == ["0"]

    @pytest.mark.asyncio
    async def test_retries_revision_conflict_without_losing_updates(self):
        documents = FakeCounterDocuments()
        backend = SyncCounterBackend(documents)
        await backend.increment_if_below("k", 10, 86400)
        documents.update_conflicts = 2

        allowed, count = await backend.increment_if_below("k", 10, 86400)

        # Two concurrent increments landed first, ours is the fourth
        assert (allowed, count) == (True, 4)
        assert await backend.read("k") == 4

    @pytest.mark.asyncio
    async def test_denies_at_limit(self):
        documents = FakeCounterDocuments()
        documents.documents["k"] = {"count": 10}
        documents.revisions["k"] = 5
        backend = SyncCounterBackend(documents)

        assert await backend.increment_if_below("k", 10, 86400) == (False, 10)
        assert documents.documents["k"]["count"] == 10

    @pytest.mark.asyncio
    async def test_too_many_conflicts_fails_open_through_limiter(self):
        documents = FakeCounterDocuments()
        documents.documents[rate_limit_key(DAY)] = {"count": 0}
        documents.revisions[rate_limit_key(DAY)] = 0
        documents.update_conflicts = 100
        limiter = RateLimiter(SyncCounterBackend(documents, max_revision_retries=3), limit=1000, today=lambda: DAY)

        result = await limiter.check_and_increment()

        assert result.allowed is True
        assert result.error is not None
