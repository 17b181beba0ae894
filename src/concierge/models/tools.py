"""Tool-calling models and the tagged LLM response union."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class ToolDefinition(BaseModel):
    """A tool offered to the model. ``parameters`` is a JSON Schema object."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = "{}"
    """Raw JSON string as emitted by the model."""

    def parsed_arguments(self) -> dict[str, Any]:
        """Arguments as a dict, or ``{}`` when they are not a JSON object."""
        try:
            value = json.loads(self.arguments)
        except (json.JSONDecodeError, TypeError):
            return {}
        return value if isinstance(value, dict) else {}


class FileAttachment(BaseModel):
    """A file returned by a tool that the model should see as multimodal content."""

    filename: str
    mime_type: str
    data: bytes = b""


class ToolResult(BaseModel):
    """The outcome of one tool call, fed back to the model."""

    tool_call_id: str
    content: str
    file_attachments: list[FileAttachment] = Field(default_factory=list)

    @classmethod
    def error(cls, tool_call_id: str, message: str) -> ToolResult:
        """Structured ``{"error": ...}`` result."""
        return cls(tool_call_id=tool_call_id, content=json.dumps({"error": message}))


class AssistantToolCallMessage(BaseModel):
    """The assistant turn that requested tools; preserved verbatim for the follow-up call."""

    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    reasoning: str | None = None
    """Provider reasoning text, propagated back on the next round when present."""


class ToolInteraction(BaseModel):
    """One tool round: the assistant's request plus results in call order."""

    assistant_message: AssistantToolCallMessage
    results: list[ToolResult] = Field(default_factory=list)


# ── LLM responses ──────────────────────────────────────────────────────────────


class TextResponse(BaseModel):
    """The model answered with text; the tool loop ends."""

    kind: Literal["text"] = "text"
    text: str
    prompt_tokens: int | None = None
    spend_usd: float | None = None


class ToolCallsResponse(BaseModel):
    """The model asked for one or more tools."""

    kind: Literal["tool_calls"] = "tool_calls"
    assistant_message: AssistantToolCallMessage
    prompt_tokens: int | None = None
    spend_usd: float | None = None

    @property
    def calls(self) -> list[ToolCall]:
        return self.assistant_message.tool_calls


# Discriminated on ``kind``.
LLMResponse = Annotated[TextResponse | ToolCallsResponse, Field(discriminator="kind")]


# ── Tool side outputs ──────────────────────────────────────────────────────────


class GeneratedImage(BaseModel):
    """An image produced by a tool during the turn, relayed to the chat as a photo."""

    data: bytes
    prompt: str = ""


class ToolOutputs(BaseModel):
    """Side outputs buffered by the tool executor for the current turn."""

    generated_images: list[GeneratedImage] = Field(default_factory=list)
    generated_documents: list[FileAttachment] = Field(default_factory=list)
    downloaded_file_names: list[str] = Field(default_factory=list)
