"""Tests for the sliding-window rate limiter and the chat admission gate."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatrelay.service.errors import (
    RATE_LIMIT_REJECTION_MESSAGE,
    RateLimitExceeded,
    ServiceUnavailableError,
)
from chatrelay.service.rate_limit import RateLimitGate, RateLimiter, rate_limit_key
from chatrelay.storage.memory import InMemoryWindowStore
from chatrelay.storage.redis_cache import RedisCache


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryWindowStore()


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, limit=10, window_seconds=60, clock=clock)


class TestRateLimiter:
    """Window counting against the in-process store."""

    def test_key_format(self):
        assert rate_limit_key("u1") == "rate_limit:user:u1:chat"

    def test_rejects_non_positive_limit(self, store):
        with pytest.raises(ValueError):
            RateLimiter(store, limit=0)

    async def test_allows_until_limit_reached(self, limiter):
        """Nine recorded requests leave room; the tenth fills the window."""
        for _ in range(9):
            await limiter.record_request("alice")
        assert await limiter.is_allowed("alice") is True

        await limiter.record_request("alice")
        assert await limiter.is_allowed("alice") is False

    async def test_same_second_requests_are_all_counted(self, limiter, store):
        """Entries with an identical score must not collapse into one."""
        for _ in range(10):
            await limiter.record_request("alice")
        count = await store.count_window(rate_limit_key("alice"), 0, 10_000)
        assert count == 10

    async def test_window_boundary(self, limiter, clock):
        """Entries exactly W seconds old still count; older ones do not."""
        for _ in range(10):
            await limiter.record_request("alice")

        clock.now = 1_060.0
        assert await limiter.is_allowed("alice") is False

        clock.now = 1_061.0
        assert await limiter.is_allowed("alice") is True

    async def test_users_are_independent(self, limiter):
        for _ in range(10):
            await limiter.record_request("alice")
        assert await limiter.is_allowed("alice") is False
        assert await limiter.is_allowed("bob") is True

    async def test_record_prunes_expired_entries(self, limiter, store, clock):
        for _ in range(5):
            await limiter.record_request("alice")
        clock.now = 1_100.0
        await limiter.record_request("alice")
        count = await store.count_window(rate_limit_key("alice"), 0, 10_000)
        assert count == 1

    async def test_store_failure_fails_open(self, clock):
        broken = MagicMock()
        broken.count_window = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(broken, clock=clock, fail_open=True)

        with patch("chatrelay.service.rate_limit.logger") as mock_logger:
            assert await limiter.is_allowed("alice") is True
            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[0][0] == "rate_limit_check_failed"

    async def test_store_failure_fails_secure(self, clock):
        broken = MagicMock()
        broken.count_window = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(broken, clock=clock, fail_open=False)
        with pytest.raises(ConnectionError):
            await limiter.is_allowed("alice")

    async def test_record_failure_is_swallowed(self, clock):
        broken = MagicMock()
        broken.record_in_window = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(broken, clock=clock)
        await limiter.record_request("alice")
        broken.record_in_window.assert_awaited_once()


class TestRateLimitGate:
    """Admission decisions raised as service errors."""

    async def test_admit_records_request(self, limiter, store):
        gate = RateLimitGate(limiter)
        await gate.admit("alice")
        assert await store.count_window(rate_limit_key("alice"), 0, 10_000) == 1

    async def test_eleventh_request_rejected(self, limiter):
        gate = RateLimitGate(limiter)
        for _ in range(10):
            await gate.admit("alice")

        with pytest.raises(RateLimitExceeded) as excinfo:
            await gate.admit("alice")
        assert excinfo.value.message == RATE_LIMIT_REJECTION_MESSAGE
        assert excinfo.value.retry_after == 60
        assert excinfo.value.status_code == 429

    async def test_rejected_request_not_recorded(self, limiter, store):
        gate = RateLimitGate(limiter)
        for _ in range(10):
            await gate.admit("alice")
        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                await gate.admit("alice")
        assert await store.count_window(rate_limit_key("alice"), 0, 10_000) == 10

    async def test_unexpected_error_admits_when_fail_open(self):
        limiter = MagicMock()
        limiter.is_allowed = AsyncMock(side_effect=RuntimeError("boom"))
        limiter.record_request = AsyncMock()
        gate = RateLimitGate(limiter, fail_open=True)
        await gate.admit("alice")
        limiter.record_request.assert_not_awaited()

    async def test_store_outage_unavailable_when_fail_secure(self, clock):
        """A dead store under fail-secure is a 503, never a 429."""
        broken = MagicMock()
        broken.count_window = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.record_in_window = AsyncMock()
        gate = RateLimitGate(RateLimiter(broken, clock=clock, fail_open=False), fail_open=False)

        with pytest.raises(ServiceUnavailableError) as excinfo:
            await gate.admit("alice")
        assert not isinstance(excinfo.value, RateLimitExceeded)
        assert excinfo.value.status_code == 503
        broken.record_in_window.assert_not_awaited()

    async def test_store_outage_admits_when_fail_open(self, clock):
        broken = MagicMock()
        broken.count_window = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.record_in_window = AsyncMock()
        gate = RateLimitGate(RateLimiter(broken, clock=clock, fail_open=True), fail_open=True)
        await gate.admit("alice")

    async def test_unexpected_error_unavailable_when_fail_secure(self):
        limiter = MagicMock()
        limiter.is_allowed = AsyncMock(side_effect=RuntimeError("boom"))
        gate = RateLimitGate(limiter, fail_open=False)
        with pytest.raises(ServiceUnavailableError):
            await gate.admit("alice")


class TestRedisWindowStore:
    """Redis command shape for window bookkeeping."""

    async def test_record_runs_in_one_transaction(self):
        cache = RedisCache("redis://localhost:6379/15")
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 1, True])
        cache.client = MagicMock()
        cache.client.pipeline.return_value = pipe

        await cache.record_in_window(
            "rate_limit:user:u1:chat", "m1", 1_000, ttl_seconds=70, prune_before=940
        )

        cache.client.pipeline.assert_called_once_with(transaction=True)
        pipe.zremrangebyscore.assert_called_once_with("rate_limit:user:u1:chat", "-inf", "(940")
        pipe.zadd.assert_called_once_with("rate_limit:user:u1:chat", {"m1": 1_000})
        pipe.expire.assert_called_once_with("rate_limit:user:u1:chat", 70)
        pipe.execute.assert_awaited_once()

    async def test_count_window_uses_inclusive_range(self):
        cache = RedisCache("redis://localhost:6379/15")
        cache.client = MagicMock()
        cache.client.zcount = AsyncMock(return_value=4)

        assert await cache.count_window("k", 940, 1_000) == 4
        cache.client.zcount.assert_awaited_once_with("k", 940, 1_000)
