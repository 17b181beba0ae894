"""In-process pub/sub event bus for concierge run and archive lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["ConciergeEvent", dict[str, Any]], None | Awaitable[None]]


class ConciergeEvent(StrEnum):
    """All event types published by concierge components.

    **Payloads by event:**

    ``RUN_STARTED``
        ``run_id: str``, ``trigger: str`` (``"user"``, ``"reminder"``, ``"mail"``)

    ``RUN_COMPLETED``
        ``run_id: str``, ``rounds: int``, ``stop_reason: str``, ``spend_usd: float``

    ``RUN_CANCELLED``, ``RUN_FAILED``
        ``run_id: str``; ``RUN_FAILED`` also carries ``error: str``

    ``RUN_REJECTED``
        ``trigger: str``, ``active_run_id: str``

    ``STATUS_CHANGED``
        ``status: str``

    ``ARCHIVE_CHUNK_CREATED``
        ``chunk_id: str``, ``message_count: int``, ``token_count: int``

    ``ARCHIVE_CHUNK_CONSOLIDATED``
        ``chunk_id: str``, ``merged_chunk_ids: list[str]``

    ``ARCHIVE_RETRY``
        ``attempt: int``, ``delay: float``, ``error: str``

    ``ARCHIVE_RECOVERED``
        ``recovered: int``

    ``SPEND_LIMIT_REACHED``
        ``scope: str`` (``"turn"``, ``"daily"``, ``"monthly"``), ``spent_usd: float``
    """

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_CANCELLED = "run.cancelled"
    RUN_FAILED = "run.failed"
    RUN_REJECTED = "run.rejected"
    STATUS_CHANGED = "status.changed"

    # Archive lifecycle
    ARCHIVE_CHUNK_CREATED = "archive.chunk_created"
    ARCHIVE_CHUNK_CONSOLIDATED = "archive.chunk_consolidated"
    ARCHIVE_RETRY = "archive.retry"
    ARCHIVE_RECOVERED = "archive.recovered"

    # Spend
    SPEND_LIMIT_REACHED = "spend.limit_reached"


class EventBus:
    """
    In-process pub/sub for status and lifecycle events.

    Sync handlers run inline inside :meth:`publish`. Coroutine handlers are
    scheduled on the running loop and kept referenced until they finish;
    :meth:`drain` waits for them. Handler failures, sync or async, are logged
    and never reach the publisher. Coroutine handlers published outside a
    running loop are dropped.

    Example::

        bus = EventBus()
        bus.subscribe(ConciergeEvent.STATUS_CHANGED, lambda e, p: print(p["status"]))
        bus.publish(ConciergeEvent.STATUS_CHANGED, {"status": "Listening..."})
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[ConciergeEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._pending: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("concierge.events")

    def subscribe(self, event: ConciergeEvent, handler: Handler) -> None:
        """Register ``handler(event, payload)`` for one event type. May be sync or async."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for every event type."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: ConciergeEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _log_failure(self, event: ConciergeEvent, handler: Handler, exc: BaseException) -> None:
        self._logger.error(
            "event_handler_error",
            event_type=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )

    def _schedule(self, event: ConciergeEvent, handler: Handler, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()  # type: ignore[attr-defined]
            self._logger.debug("event_handler_dropped", event_type=str(event))
            return

        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._pending.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self._log_failure(event, handler, t.exception())  # type: ignore[arg-type]

        task.add_done_callback(_done)

    def publish(self, event: ConciergeEvent, payload: dict[str, Any]) -> None:
        """
        Deliver ``payload`` to the handlers of ``event`` and to global handlers.

        Args:
            event: The event type to publish.
            payload: Event-specific data; see :class:`ConciergeEvent`.
        """
        for handler in [*self._handlers.get(event, []), *self._global_handlers]:
            try:
                result = handler(event, payload)
            except Exception as exc:
                self._log_failure(event, handler, exc)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(event, handler, result)

    async def drain(self) -> None:
        """Wait for every scheduled coroutine handler to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
