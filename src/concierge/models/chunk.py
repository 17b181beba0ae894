"""Archive chunk models: finalized chunks, pending records, and their indices."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from concierge.ids import now_ms


class Chunk(BaseModel):
    """
    An archived, summarized slice of past conversation.

    ``temporary`` chunks hold one window's worth of history and are merged
    into a ``consolidated`` chunk once enough of them accumulate. Consolidated
    chunks are never merged again.
    """

    id: str
    type: Literal["temporary", "consolidated"]
    start_time: int
    """Unix millisecond timestamp of the first archived message."""
    end_time: int
    """Unix millisecond timestamp of the last archived message."""
    token_count: int
    message_count: int
    summary: str
    raw_content_key: str
    """Record key holding the raw message batch."""

    @property
    def size_label(self) -> str:
        if self.token_count >= 1000:
            return f"{self.token_count // 1000}k"
        return str(self.token_count)


class PendingChunk(BaseModel):
    """
    Crash-recovery placeholder for a chunk whose raw batch is stored but not summarized.

    Written before the summarizer is called and deleted only once the matching
    :class:`Chunk` has been committed.
    """

    id: str
    start_time: int
    end_time: int
    token_count: int
    message_count: int
    raw_content_key: str
    created_at: int = Field(default_factory=now_ms)


class ChunkIndex(BaseModel):
    """Persisted list of finalized chunks."""

    chunks: list[Chunk] = Field(default_factory=list)

    @property
    def ordered_chunks(self) -> list[Chunk]:
        """Chunks ordered by start time, oldest first."""
        return sorted(self.chunks, key=lambda c: c.start_time)

    @property
    def temporary_chunks(self) -> list[Chunk]:
        return [c for c in self.ordered_chunks if c.type == "temporary"]

    @property
    def consolidated_chunks(self) -> list[Chunk]:
        return [c for c in self.ordered_chunks if c.type == "consolidated"]

    def get(self, chunk_id: str) -> Chunk | None:
        return next((c for c in self.chunks if c.id == chunk_id), None)


class PendingChunkIndex(BaseModel):
    """Persisted crash-recovery queue."""

    pending_chunks: list[PendingChunk] = Field(default_factory=list)


class SummarizationContext(BaseModel):
    """Context handed to the summarizer so it can resolve names and references."""

    persona_context: str | None = None
    assistant_name: str | None = None
    user_name: str | None = None
    previous_summaries: list[str] = Field(default_factory=list)
    """Summaries of earlier chunks, chronological."""
    current_conversation: str | None = None
    """Tail of the live conversation, for reference only."""

    @classmethod
    def empty(cls) -> SummarizationContext:
        return cls()


class SummaryExtraction(BaseModel):
    """Strict JSON reply expected from the summarizer."""

    summary: str
    key_topics: list[str] = Field(default_factory=list)


class ChunkIdentification(BaseModel):
    """One chunk the model considers relevant to a query."""

    chunk_id: str = Field(alias="chunkId")
    relevance: str = ""

    model_config = {"populate_by_name": True}
