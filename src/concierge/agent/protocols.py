"""Collaborator interfaces for the agent loop and the turn coordinator.

Concrete implementations (the HTTP LLM client, tool implementations, the chat
transport, calendar/mail services) live outside this package.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from concierge.ids import now_ms
from concierge.models.chunk import Chunk
from concierge.models.message import Message
from concierge.models.tools import (
    LLMResponse,
    ToolCall,
    ToolDefinition,
    ToolInteraction,
    ToolOutputs,
    ToolResult,
)


class LLMRequest(BaseModel):
    """
    Everything the LLM client needs for one call.

    The core never builds the provider wire format; the client renders this
    request however its provider expects.
    """

    messages: list[Message]
    tools: list[ToolDefinition] | None = None
    """``None`` forces a text answer."""
    prior_interactions: list[ToolInteraction] = Field(default_factory=list)
    calendar_context: str | None = None
    email_context: str | None = None
    chunk_summaries: list[Chunk] = Field(default_factory=list)
    total_chunk_count: int = 0
    current_user_message_id: str | None = None
    deployment_tools_unlocked: bool = False
    turn_started_at: int = Field(default_factory=now_ms)
    final_response_instruction: str | None = None


@runtime_checkable
class LLMClient(Protocol):
    async def generate(self, request: LLMRequest) -> LLMResponse: ...


@runtime_checkable
class ToolExecutor(Protocol):
    """Runs tool calls and buffers their side outputs for the turn."""

    async def execute_parallel(self, calls: Sequence[ToolCall]) -> list[ToolResult]:
        """Execute concurrently; results may come back in any order."""
        ...

    def cancel_all(self) -> None:
        """Abort in-flight tool work (subprocesses, downloads)."""
        ...

    def drain_outputs(self) -> ToolOutputs:
        """Return and forget the buffered side outputs."""
        ...

    def clear_outputs(self) -> None: ...


@runtime_checkable
class ChatTransport(Protocol):
    """The single paired chat."""

    async def send_text(self, text: str) -> None: ...

    async def send_photo(self, data: bytes, *, caption: str | None = None) -> None: ...

    async def send_document(
        self,
        data: bytes,
        *,
        file_name: str,
        mime_type: str,
        caption: str | None = None,
    ) -> None: ...


@runtime_checkable
class ContextProvider(Protocol):
    """Calendar and mail snapshots injected at the start of each turn."""

    async def calendar_context(self) -> str | None: ...

    async def email_context(self) -> str | None: ...


@runtime_checkable
class FileDescriber(Protocol):
    async def describe(
        self, file_names: Sequence[str], conversation: Sequence[Message]
    ) -> dict[str, str]:
        """One-line descriptions keyed by filename; unknown files may be omitted."""
        ...
