"""LLM-backed summarization and retrieval over archived message batches."""

from __future__ import annotations

import json
import os
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime

import structlog
from pydantic import BaseModel, Field, ValidationError

from concierge.archive.prompts import (
    EXCERPT_SYSTEM_PROMPT,
    EXCERPT_USER_TEMPLATE,
    IDENTIFY_SYSTEM_PROMPT,
    IDENTIFY_USER_TEMPLATE,
    SUMMARY_SYSTEM_TEMPLATE,
    SUMMARY_USER_TEMPLATE,
)
from concierge.models.chunk import (
    Chunk,
    ChunkIdentification,
    SummarizationContext,
    SummaryExtraction,
)
from concierge.models.config import ArchiveConfig
from concierge.models.message import Message
from concierge.store.conversation import FileDescriptionStore

CompletionFn = Callable[[str, str, int], Awaitable[str]]
"""``(system_prompt, user_prompt, max_tokens) -> response text``."""

_EXCERPT_MAX_TOKENS = 4_000
_IDENTIFY_MAX_TOKENS = 2_000

_logger = structlog.get_logger("concierge.archive.summarizer")


def make_completion_fn(model: str, *, temperature: float = 0.3) -> CompletionFn:
    """
    Return a completion function that calls ``model`` through litellm.

    Set ``CONCIERGE_MOCK_LLM=1`` to get deterministic canned JSON replies
    without network access (used by the examples).
    """

    async def _call(system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        if os.environ.get("CONCIERGE_MOCK_LLM") == "1":
            return _mock_completion(system_prompt, user_prompt)

        import litellm

        response = await litellm.acompletion(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""

    return _call


def _mock_completion(system_prompt: str, user_prompt: str) -> str:
    if '"excerpts"' in system_prompt:
        return json.dumps({"excerpts": []})
    if '"relevant_chunks"' in system_prompt:
        return json.dumps({"relevant_chunks": []})
    lines = [ln.strip() for ln in user_prompt.splitlines() if ln.strip().startswith("[")]
    summary = " ".join(ln[:120] for ln in lines[:8]) or "(conversation segment)"
    return json.dumps({"summary": summary, "key_topics": ["mock"]})


def extract_first_json_object(text: str) -> str | None:
    """
    Return the first balanced ``{...}`` object in ``text``.

    Braces inside JSON string literals are ignored. Returns ``None`` when no
    complete object is present.
    """
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


class _ExcerptResult(BaseModel):
    excerpts: list[str] = Field(default_factory=list)


class _IdentificationResult(BaseModel):
    relevant_chunks: list[ChunkIdentification] = Field(default_factory=list)


def _local(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000)


def format_period(timestamp_ms: int) -> str:
    """Medium date with short time, e.g. ``Oct 18, 2026 14:05``."""
    return _local(timestamp_ms).strftime("%b %d, %Y %H:%M")


def format_short(timestamp_ms: int) -> str:
    return _local(timestamp_ms).strftime("%m/%d/%y %H:%M")


def format_date_range(start_ms: int, end_ms: int) -> str:
    """``Oct 3-Oct 9`` style range used in consolidation context."""
    start, end = _local(start_ms), _local(end_ms)
    return f"{start:%b} {start.day}-{end:%b} {end.day}"


class Summarizer:
    """
    Turns raw message batches into chunk summaries and answers archive queries.

    All model traffic goes through a single :data:`CompletionFn`, so tests can
    substitute a scripted fake and examples can use the litellm mock mode.
    """

    def __init__(
        self,
        complete: CompletionFn,
        config: ArchiveConfig | None = None,
        descriptions: FileDescriptionStore | None = None,
    ) -> None:
        self._complete = complete
        self._config = config or ArchiveConfig()
        self._descriptions = descriptions

    async def _annotate(self, message: Message) -> str:
        names = [*message.image_file_names, *message.document_file_names]
        known = await self._descriptions.get_many(names) if self._descriptions and names else {}

        def _tag(kind: str, name: str) -> str:
            desc = known.get(name)
            return f"[{kind}: {name}" + (f' - "{desc}"' if desc else "") + "] "

        prefix = "".join(_tag("Image", n) for n in message.image_file_names)
        prefix += "".join(_tag("Document", n) for n in message.document_file_names)
        return prefix + message.content

    async def format_for_summary(self, messages: Sequence[Message]) -> str:
        parts = [f"[{m.speaker()}]: {await self._annotate(m)}" for m in messages]
        return "\n\n".join(parts)

    async def format_for_search(self, messages: Sequence[Message]) -> str:
        parts = [
            f"[{format_short(m.timestamp)}] {m.speaker()}: {await self._annotate(m)}"
            for m in messages
        ]
        return "\n\n".join(parts)

    @staticmethod
    def context_sections(context: SummarizationContext) -> list[str]:
        sections: list[str] = []
        if context.persona_context:
            sections.append(f"USER PROFILE:\n{context.persona_context}")
        else:
            identity = []
            if context.assistant_name:
                identity.append(f"Assistant name: {context.assistant_name}")
            if context.user_name:
                identity.append(f"User name: {context.user_name}")
            if identity:
                sections.append("IDENTITY:\n" + "\n".join(identity))

        if context.previous_summaries:
            numbered = "\n\n".join(
                f"[Chunk {i}] {summary}"
                for i, summary in enumerate(context.previous_summaries, start=1)
            )
            sections.append(f"PREVIOUS CONVERSATION SUMMARIES:\n{numbered}")

        if context.current_conversation:
            sections.append(
                "CURRENT CONVERSATION (most recent, for context only):\n"
                f"{context.current_conversation}"
            )
        return sections

    async def summarize(
        self,
        messages: Sequence[Message],
        context: SummarizationContext | None = None,
    ) -> str:
        """
        Summarize a batch of messages.

        Returns ``"<summary> [Topics: a, b]"`` when the model replies with the
        expected JSON, otherwise the first ``summary_fallback_chars`` of the raw
        reply. Errors from the completion function propagate so the caller's
        retry policy can handle them.
        """
        context = context or SummarizationContext.empty()
        conversation = await self.format_for_summary(messages)
        system_prompt = SUMMARY_SYSTEM_TEMPLATE.render(sections=self.context_sections(context))
        user_prompt = SUMMARY_USER_TEMPLATE.render(
            period_start=format_period(messages[0].timestamp) if messages else "",
            period_end=format_period(messages[-1].timestamp) if messages else "",
            conversation=conversation[: self._config.summary_input_chars],
        )

        response = await self._complete(system_prompt, user_prompt, self._config.summary_max_tokens)

        raw_json = extract_first_json_object(response)
        if raw_json is not None:
            try:
                result = SummaryExtraction.model_validate_json(raw_json)
            except ValidationError:
                _logger.warning("summary_json_invalid", response_chars=len(response))
            else:
                return f"{result.summary} [Topics: {', '.join(result.key_topics)}]"

        return response[: self._config.summary_fallback_chars].strip()

    async def extract_excerpts(self, messages: Sequence[Message], query: str) -> list[str]:
        """Verbatim excerpts relevant to ``query``; ``[]`` when the reply is unusable."""
        conversation = await self.format_for_search(messages)
        user_prompt = EXCERPT_USER_TEMPLATE.render(
            query=query, conversation=conversation[: self._config.summary_input_chars]
        )
        response = await self._complete(EXCERPT_SYSTEM_PROMPT, user_prompt, _EXCERPT_MAX_TOKENS)
        raw_json = extract_first_json_object(response)
        if raw_json is None:
            return []
        try:
            return _ExcerptResult.model_validate_json(raw_json).excerpts
        except ValidationError:
            return []

    async def identify_relevant(
        self, chunks: Sequence[Chunk], query: str
    ) -> list[ChunkIdentification]:
        """Ask the model which of ``chunks`` may hold information about ``query``."""
        if not chunks:
            return []
        user_prompt = IDENTIFY_USER_TEMPLATE.render(
            query=query,
            chunks=[
                {
                    "id": c.id,
                    "start": format_short(c.start_time),
                    "end": format_short(c.end_time),
                    "summary": c.summary,
                }
                for c in chunks
            ],
        )
        response = await self._complete(IDENTIFY_SYSTEM_PROMPT, user_prompt, _IDENTIFY_MAX_TOKENS)
        raw_json = extract_first_json_object(response)
        if raw_json is None:
            return []
        try:
            return _IdentificationResult.model_validate_json(raw_json).relevant_chunks
        except ValidationError:
            return []
