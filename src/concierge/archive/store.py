"""Crash-safe tiered archive of summarized conversation history."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from concierge.archive.summarizer import Summarizer, format_date_range
from concierge.events.bus import ConciergeEvent, EventBus
from concierge.ids import make_id
from concierge.models.chunk import (
    Chunk,
    ChunkIdentification,
    ChunkIndex,
    PendingChunk,
    PendingChunkIndex,
    SummarizationContext,
)
from concierge.models.config import ArchiveConfig
from concierge.models.message import Message
from concierge.retry import RetryPolicy
from concierge.store.records import CorruptRecordError, RecordStore
from concierge.tokens.estimator import TokenEstimator

CHUNK_INDEX_KEY = "chunk_index"
PENDING_INDEX_KEY = "pending_chunks"
CHUNK_KEY_PREFIX = "chunks/"

RetryHook = Callable[[int, Exception, float], None | Awaitable[None]]

_messages_adapter = TypeAdapter(list[Message])

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ArchiveError(Exception):
    """Base class for archive errors."""


class ChunkNotFoundError(ArchiveError):
    """Raised when a chunk id is not in the index."""

    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"Chunk not found in archive: {chunk_id!r}")
        self.chunk_id = chunk_id


class ChunkContentMissingError(ArchiveError):
    """Raised when a chunk's raw message batch cannot be read."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Chunk content not found: {key!r}")
        self.key = key


class EmptyBatchError(ArchiveError):
    """Raised when asked to archive zero messages."""

    def __init__(self) -> None:
        super().__init__("Cannot archive an empty message batch")


# ── Store ──────────────────────────────────────────────────────────────────────


class ArchiveStore:
    """
    Two-tier archive: temporary chunks, merged into consolidated chunks.

    Durability protocol for :meth:`archive`:

    1. Write the raw batch under ``chunks/<id>``.
    2. Write a :class:`PendingChunk` naming it.
    3. Summarize (retried with capped backoff; may take arbitrarily long).
    4. Commit the :class:`Chunk` to the index.
    5. Delete the pending record.

    A crash between 2 and 5 leaves a pending record that
    :meth:`recover_pending_chunks` turns into a temporary chunk on the next
    start. Once 6 temporary chunks exist the 4 oldest are consolidated by a
    background task (see :meth:`wait_for_consolidation`).

    Index mutation is serialised by an ``asyncio.Lock`` that is never held
    across a summarizer call.

    Example::

        archive = ArchiveStore(records, Summarizer(complete), config.archive)
        await archive.initialize()
        await archive.recover_pending_chunks()
        chunk = await archive.archive(window.to_archive, context)
    """

    def __init__(
        self,
        records: RecordStore,
        summarizer: Summarizer,
        config: ArchiveConfig | None = None,
        *,
        retry: RetryPolicy | None = None,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._records = records
        self._summarizer = summarizer
        self._config = config or ArchiveConfig()
        self._retry = retry or RetryPolicy()
        self._event_bus = event_bus or EventBus()
        self._estimator = estimator or TokenEstimator()
        self._index = ChunkIndex()
        self._pending = PendingChunkIndex()
        self._lock = asyncio.Lock()
        self._consolidating = False
        self._consolidation_task: asyncio.Task[Chunk | None] | None = None
        self._live_context: SummarizationContext | None = None
        self._logger = structlog.get_logger("concierge.archive")

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load both indices. Corrupt indices fall back to empty."""
        await self.reload()

    async def reload(self) -> None:
        async with self._lock:
            self._index = await self._records.load_model(
                CHUNK_INDEX_KEY, ChunkIndex, ChunkIndex()
            )
            self._pending = await self._records.load_model(
                PENDING_INDEX_KEY, PendingChunkIndex, PendingChunkIndex()
            )

    async def clear(self) -> None:
        """Delete every chunk, pending record and raw batch."""
        await self.cancel_consolidation()
        async with self._lock:
            for key in await self._records.keys(CHUNK_KEY_PREFIX):
                await self._records.delete(key)
            self._index = ChunkIndex()
            self._pending = PendingChunkIndex()
            await self._records.save_model(CHUNK_INDEX_KEY, self._index)
            await self._records.save_model(PENDING_INDEX_KEY, self._pending)
            self._live_context = None
        self._logger.info("archive_cleared")

    # ── Archiving ──────────────────────────────────────────────────────────────

    async def archive(
        self,
        messages: Sequence[Message],
        context: SummarizationContext | None = None,
        *,
        on_retry: RetryHook | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> Chunk:
        """
        Archive ``messages`` as a new temporary chunk.

        Only the summarization step is retried, so retries never duplicate the
        raw batch or the pending record. A pending record from an interrupted
        earlier attempt over the same span is resumed rather than duplicated.

        Args:
            messages: Oldest-first batch removed from the active window.
            context: Persona and surrounding summaries for the summarizer.
                Also cached for use by consolidation.
            on_retry: Called with ``(attempt, error, delay)`` after each failed
                summarization attempt.
            should_continue: Checked before each summarization retry; when it
                returns ``False`` the last error is raised and the pending
                record is left for a later attempt.

        Raises:
            EmptyBatchError: If ``messages`` is empty.
        """
        if not messages:
            raise EmptyBatchError()

        context = context or SummarizationContext.empty()
        self._live_context = context
        batch = list(messages)
        start_time = batch[0].timestamp
        end_time = batch[-1].timestamp
        token_count = self._estimator.estimate_messages(batch)

        async with self._lock:
            pending = next(
                (
                    p
                    for p in self._pending.pending_chunks
                    if p.start_time == start_time
                    and p.end_time == end_time
                    and p.message_count == len(batch)
                ),
                None,
            )
            if pending is None:
                chunk_id = make_id("chunk")
                pending = PendingChunk(
                    id=chunk_id,
                    start_time=start_time,
                    end_time=end_time,
                    token_count=token_count,
                    message_count=len(batch),
                    raw_content_key=f"{CHUNK_KEY_PREFIX}{chunk_id}",
                )
                await self._write_batch(pending.raw_content_key, batch)
                self._pending.pending_chunks.append(pending)
                await self._records.save_model(PENDING_INDEX_KEY, self._pending)
            else:
                await self._write_batch(pending.raw_content_key, batch)
                self._logger.info("archive_pending_resumed", chunk_id=pending.id)

        def _on_failure(attempt: int, exc: Exception, delay: float) -> Awaitable[None] | None:
            self._event_bus.publish(
                ConciergeEvent.ARCHIVE_RETRY,
                {"attempt": attempt, "delay": delay, "error": str(exc)},
            )
            return on_retry(attempt, exc, delay) if on_retry is not None else None

        summary = await self._retry.run(
            partial(self._summarizer.summarize, batch, context),
            on_failure=_on_failure,
            should_continue=should_continue,
            label="archive_summarize",
        )

        chunk = Chunk(
            id=pending.id,
            type="temporary",
            start_time=pending.start_time,
            end_time=pending.end_time,
            token_count=pending.token_count,
            message_count=pending.message_count,
            summary=summary,
            raw_content_key=pending.raw_content_key,
        )
        async with self._lock:
            self._index.chunks.append(chunk)
            await self._records.save_model(CHUNK_INDEX_KEY, self._index)
            self._pending.pending_chunks = [
                p for p in self._pending.pending_chunks if p.id != pending.id
            ]
            await self._records.save_model(PENDING_INDEX_KEY, self._pending)

        self._logger.info(
            "archive_chunk_created",
            chunk_id=chunk.id,
            message_count=chunk.message_count,
            token_count=chunk.token_count,
        )
        self._event_bus.publish(
            ConciergeEvent.ARCHIVE_CHUNK_CREATED,
            {
                "chunk_id": chunk.id,
                "message_count": chunk.message_count,
                "token_count": chunk.token_count,
            },
        )

        self._schedule_consolidation()
        return chunk

    async def recover_pending_chunks(self) -> int:
        """
        Summarize every batch left pending by an interrupted run.

        Each recovered batch becomes a temporary chunk. Batches whose raw
        content cannot be read are logged and dropped. Summarization retries
        without limit.

        Returns:
            The number of chunks recovered.
        """
        pending = list(self._pending.pending_chunks)
        if not pending:
            return 0

        self._logger.info("archive_recovery_started", pending=len(pending))
        retry = self._retry.unbounded()
        recovered = 0
        for record in pending:
            try:
                batch = await self._load_batch(record.raw_content_key)
            except ChunkContentMissingError as exc:
                self._logger.error(
                    "archive_pending_unreadable", chunk_id=record.id, error=str(exc)
                )
                continue
            if not batch:
                self._logger.error("archive_pending_empty", chunk_id=record.id)
                continue

            summary = await retry.run(
                partial(self._summarizer.summarize, batch, SummarizationContext.empty()),
                label="archive_recover",
            )
            chunk = Chunk(
                id=record.id,
                type="temporary",
                start_time=record.start_time,
                end_time=record.end_time,
                token_count=record.token_count,
                message_count=record.message_count,
                summary=summary,
                raw_content_key=record.raw_content_key,
            )
            async with self._lock:
                self._index.chunks.append(chunk)
            recovered += 1
            self._logger.info("archive_pending_recovered", chunk_id=chunk.id)

        async with self._lock:
            handled = {p.id for p in pending}
            self._pending.pending_chunks = [
                p for p in self._pending.pending_chunks if p.id not in handled
            ]
            await self._records.save_model(CHUNK_INDEX_KEY, self._index)
            await self._records.save_model(PENDING_INDEX_KEY, self._pending)

        self._event_bus.publish(ConciergeEvent.ARCHIVE_RECOVERED, {"recovered": recovered})
        await self.check_and_consolidate()
        return recovered

    # ── Consolidation ──────────────────────────────────────────────────────────

    def _schedule_consolidation(self) -> None:
        """
        Start consolidation in the background when the trigger is reached.

        Runs as its own task: cancelling the caller leaves the merge running
        and an archive that already committed intact.
        """
        if len(self._index.temporary_chunks) < self._config.consolidation_trigger:
            return
        if self.consolidation_in_progress:
            return
        self._consolidation_task = asyncio.create_task(self.check_and_consolidate())

    @property
    def consolidation_in_progress(self) -> bool:
        task = self._consolidation_task
        return task is not None and not task.done()

    async def wait_for_consolidation(self) -> None:
        """Await any in-flight background consolidation, then clear the handle."""
        task = self._consolidation_task
        if task is not None and not task.done():
            await task
        self._consolidation_task = None

    async def cancel_consolidation(self) -> None:
        """Cancel any in-flight background consolidation and wait for it to unwind."""
        task = self._consolidation_task
        self._consolidation_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            self._logger.info("archive_consolidation_cancelled")

    async def check_and_consolidate(self) -> Chunk | None:
        """
        Merge the oldest temporary chunks once enough have accumulated.

        Failure is logged and leaves the temporary chunks in place for a
        later attempt.

        Returns:
            The new consolidated chunk, or ``None`` when nothing was merged.
        """
        temporaries = self._index.temporary_chunks
        if len(temporaries) < self._config.consolidation_trigger or self._consolidating:
            return None

        self._consolidating = True
        try:
            return await self._consolidate(temporaries[: self._config.chunks_to_consolidate])
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("archive_consolidation_failed", error=str(exc))
            return None
        finally:
            self._consolidating = False

    def _consolidation_context(self, merged: Sequence[Chunk]) -> SummarizationContext:
        start_time = merged[0].start_time
        end_time = merged[-1].end_time
        merged_ids = {c.id for c in merged}
        others = [c for c in self._index.ordered_chunks if c.id not in merged_ids]

        def _describe(chunk: Chunk) -> str:
            period = format_date_range(chunk.start_time, chunk.end_time)
            return f"[{chunk.size_label} chunk, {period}]: {chunk.summary}"

        before = [_describe(c) for c in others if c.end_time < start_time]
        after = [_describe(c) for c in others if c.start_time > end_time]

        live = self._live_context or SummarizationContext.empty()
        if live.current_conversation:
            after.append(f"[CURRENT LIVE CONVERSATION]:\n{live.current_conversation}")

        return SummarizationContext(
            persona_context=live.persona_context,
            assistant_name=live.assistant_name,
            user_name=live.user_name,
            previous_summaries=before,
            current_conversation="\n\n".join(after) or None,
        )

    async def _consolidate(self, merged: Sequence[Chunk]) -> Chunk:
        batch: list[Message] = []
        for chunk in merged:
            batch.extend(await self._load_batch(chunk.raw_content_key))

        chunk_id = make_id("chunk")
        raw_key = f"{CHUNK_KEY_PREFIX}{chunk_id}"
        await self._write_batch(raw_key, batch)

        try:
            summary = await self._summarizer.summarize(
                batch, self._consolidation_context(merged)
            )
        except BaseException:
            await self._records.delete(raw_key)
            raise

        consolidated = Chunk(
            id=chunk_id,
            type="consolidated",
            start_time=merged[0].start_time,
            end_time=merged[-1].end_time,
            token_count=sum(c.token_count for c in merged),
            message_count=sum(c.message_count for c in merged),
            summary=summary,
            raw_content_key=raw_key,
        )

        merged_ids = [c.id for c in merged]
        async with self._lock:
            self._index.chunks = [c for c in self._index.chunks if c.id not in merged_ids]
            self._index.chunks.append(consolidated)
            await self._records.save_model(CHUNK_INDEX_KEY, self._index)
        for chunk in merged:
            await self._records.delete(chunk.raw_content_key)

        self._logger.info(
            "archive_chunks_consolidated",
            chunk_id=consolidated.id,
            merged=len(merged_ids),
            message_count=consolidated.message_count,
        )
        self._event_bus.publish(
            ConciergeEvent.ARCHIVE_CHUNK_CONSOLIDATED,
            {"chunk_id": consolidated.id, "merged_chunk_ids": merged_ids},
        )
        return consolidated

    # ── Retrieval ──────────────────────────────────────────────────────────────

    def recent_summaries(self, count: int | None = None) -> list[Chunk]:
        """
        Chunks to inject into every turn, oldest first.

        The newest ``count`` consolidated chunks (default from config) plus
        every temporary chunk.
        """
        if count is None:
            count = self._config.recent_consolidated_count
        consolidated = self._index.consolidated_chunks
        recent = consolidated[-count:] if count > 0 else []
        return sorted([*recent, *self._index.temporary_chunks], key=lambda c: c.start_time)

    def all_chunks(self) -> list[Chunk]:
        return self._index.ordered_chunks

    @property
    def chunk_count(self) -> int:
        return len(self._index.chunks)

    @property
    def pending_chunks(self) -> list[PendingChunk]:
        return list(self._pending.pending_chunks)

    @property
    def context_limits(self) -> tuple[int, int]:
        """``(min, max)`` estimated tokens for the active window."""
        return self._config.min_context_tokens, self._config.max_context_tokens

    def get_chunk(self, chunk_id: str) -> Chunk:
        chunk = self._index.get(chunk_id)
        if chunk is None:
            self._logger.warning(
                "archive_chunk_not_found", chunk_id=chunk_id, total_chunks=self.chunk_count
            )
            raise ChunkNotFoundError(chunk_id)
        return chunk

    async def chunk_messages(self, chunk_id: str) -> list[Message]:
        return await self._load_batch(self.get_chunk(chunk_id).raw_content_key)

    async def chunk_content(self, chunk_id: str) -> str:
        """Full transcript of a chunk, one ``[time] Role: content`` entry per message."""
        return await self._summarizer.format_for_search(await self.chunk_messages(chunk_id))

    async def search_chunk(self, chunk_id: str, query: str) -> list[str]:
        """Verbatim excerpts of one chunk relevant to ``query``."""
        messages = await self.chunk_messages(chunk_id)
        return await self._summarizer.extract_excerpts(messages, query)

    async def identify_relevant_chunks(
        self, query: str, exclude_recent: int = 5
    ) -> list[ChunkIdentification]:
        """Older chunks (all but the newest ``exclude_recent``) that may answer ``query``."""
        ordered = self._index.ordered_chunks
        older = ordered[: max(len(ordered) - exclude_recent, 0)]
        return await self._summarizer.identify_relevant(older, query)

    # ── Raw batches ────────────────────────────────────────────────────────────

    async def _write_batch(self, key: str, messages: Sequence[Message]) -> None:
        payload: list[dict[str, Any]] = [m.model_dump(mode="json") for m in messages]
        await self._records.put_json(key, payload)

    async def _load_batch(self, key: str) -> list[Message]:
        try:
            data = await self._records.get_json(key)
        except CorruptRecordError as exc:
            raise ChunkContentMissingError(key) from exc
        if data is None:
            raise ChunkContentMissingError(key)
        try:
            return _messages_adapter.validate_python(data)
        except ValidationError as exc:
            raise ChunkContentMissingError(key) from exc
