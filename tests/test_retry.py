"""Tests for RetryPolicy."""

from __future__ import annotations

import asyncio

import pytest

from concierge.models.config import RetryConfig
from concierge.retry import RetryExhaustedError, RetryPolicy


class Flaky:
    def __init__(self, failures: int, error: BaseException | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.error = error or RuntimeError("transient")

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:
    def test_delays_double_then_cap(self):
        """2, 4, 8, 16, 32 then capped at 60."""
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in range(1, 9)] == [2, 4, 8, 16, 32, 60, 60, 60]

    def test_exponent_stops_growing(self):
        """Past the fifth doubling only the cap applies."""
        policy = RetryPolicy(RetryConfig(base_delay=1.0, max_delay=1_000.0))
        assert policy.delay_for(6) == 32.0
        assert policy.delay_for(50) == 32.0

    async def test_succeeds_after_failures(self, sleep):
        op = Flaky(failures=3)
        result = await RetryPolicy(sleep=sleep).run(op)
        assert result == "ok"
        assert op.calls == 4
        assert sleep.delays == [2.0, 4.0, 8.0]

    async def test_bounded_policy_gives_up(self, sleep):
        op = Flaky(failures=10)
        policy = RetryPolicy(RetryConfig(max_attempts=3), sleep=sleep)
        with pytest.raises(RetryExhaustedError) as info:
            await policy.run(op)
        assert info.value.attempts == 3
        assert isinstance(info.value.last_error, RuntimeError)
        assert op.calls == 3

    async def test_unbounded_copy_ignores_max_attempts(self, sleep):
        policy = RetryPolicy(RetryConfig(max_attempts=1), sleep=sleep).unbounded()
        assert policy.config.max_attempts is None
        assert await policy.run(Flaky(failures=4)) == "ok"

    async def test_cancellation_is_not_retried(self, sleep):
        op = Flaky(failures=1, error=asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await RetryPolicy(sleep=sleep).run(op)
        assert op.calls == 1
        assert sleep.delays == []

    async def test_should_continue_false_reraises(self, sleep):
        op = Flaky(failures=5)
        with pytest.raises(RuntimeError):
            await RetryPolicy(sleep=sleep).run(op, should_continue=lambda: False)
        assert op.calls == 1

    async def test_on_failure_sync_and_async(self, sleep):
        seen: list[tuple[int, float]] = []

        def sync_hook(attempt, exc, delay):
            seen.append((attempt, delay))

        await RetryPolicy(sleep=sleep).run(Flaky(failures=1), on_failure=sync_hook)

        async def async_hook(attempt, exc, delay):
            seen.append((attempt, delay))

        await RetryPolicy(sleep=sleep).run(Flaky(failures=1), on_failure=async_hook)
        assert seen == [(1, 2.0), (1, 2.0)]
