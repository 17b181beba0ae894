"""Capped exponential backoff for operations that must eventually succeed."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from concierge.models.config import RetryConfig

T = TypeVar("T")

FailureHook = Callable[[int, Exception, float], None | Awaitable[None]]

_logger = structlog.get_logger("concierge.retry")

# Doubling stops after this many steps; the cap takes over anyway.
_MAX_EXPONENT = 5


class RetryExhaustedError(Exception):
    """Raised when a bounded policy runs out of attempts."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """
    Retry an async operation with capped exponential backoff.

    The delay before attempt ``n + 1`` is ``min(base * 2 ** min(n - 1, 5), cap)``,
    i.e. 2s, 4s, 8s, ... up to 60s with the defaults. ``asyncio.CancelledError``
    is never retried.

    Example::

        policy = RetryPolicy(RetryConfig())
        summary = await policy.run(lambda: summarizer.summarize(batch))
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def unbounded(self) -> RetryPolicy:
        """Same delays and sleep function, but never gives up."""
        return RetryPolicy(self._config.model_copy(update={"max_attempts": None}), sleep=self._sleep)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        exponent = min(max(attempt - 1, 0), _MAX_EXPONENT)
        return min(self._config.base_delay * (2**exponent), self._config.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_failure: FailureHook | None = None,
        should_continue: Callable[[], bool] | None = None,
        label: str = "operation",
    ) -> T:
        """
        Await ``operation()`` until it succeeds.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            on_failure: Called with ``(attempt, error, delay)`` after each
                failure, before sleeping. May be sync or async.
            should_continue: Checked before every retry; returning ``False``
                re-raises the last error.
            label: Name used in log events.

        Returns:
            The first successful result.

        Raises:
            RetryExhaustedError: When ``max_attempts`` is set and reached.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                max_attempts = self._config.max_attempts
                if max_attempts is not None and attempt >= max_attempts:
                    _logger.error("retry_exhausted", label=label, attempts=attempt, error=str(exc))
                    raise RetryExhaustedError(attempt, exc) from exc
                if should_continue is not None and not should_continue():
                    raise
                delay = self.delay_for(attempt)
                _logger.warning(
                    "retry_scheduled",
                    label=label,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                if on_failure is not None:
                    result = on_failure(attempt, exc, delay)
                    if asyncio.iscoroutine(result):
                        await result
                await self._sleep(delay)
