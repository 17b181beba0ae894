"""Typed record accessors: the live conversation, file descriptions, settings."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog
from pydantic import BaseModel, Field

from concierge.models.message import Message
from concierge.models.settings import Settings
from concierge.store.records import CorruptRecordError, RecordStore

CONVERSATION_KEY = "conversation"
FILE_DESCRIPTIONS_KEY = "file_descriptions"
SETTINGS_KEY = "settings"

TOOL_LOG_PREFIX = "[TOOL RUN LOG - compact]"

_logger = structlog.get_logger("concierge.store.conversation")


def is_tool_log(message: Message) -> bool:
    return message.role == "assistant" and message.content.startswith(TOOL_LOG_PREFIX)


def prune_tool_logs(messages: Sequence[Message], keep: int) -> list[Message]:
    """Drop all but the newest ``keep`` compact tool-run log messages."""
    log_positions = [i for i, m in enumerate(messages) if is_tool_log(m)]
    excess = len(log_positions) - keep
    if excess <= 0:
        return list(messages)
    dropped = set(log_positions[:excess])
    return [m for i, m in enumerate(messages) if i not in dropped]


class _ConversationRecord(BaseModel):
    messages: list[Message] = Field(default_factory=list)


class ConversationStore:
    """Loads and saves the active conversation as one record."""

    def __init__(self, records: RecordStore, *, max_tool_logs: int = 5) -> None:
        self._records = records
        self._max_tool_logs = max_tool_logs

    async def load(self) -> list[Message]:
        record = await self._records.load_model(
            CONVERSATION_KEY, _ConversationRecord, _ConversationRecord()
        )
        messages = prune_tool_logs(record.messages, self._max_tool_logs)
        if len(messages) != len(record.messages):
            _logger.info(
                "tool_logs_pruned_on_load",
                dropped=len(record.messages) - len(messages),
            )
        return messages

    async def save(self, messages: Sequence[Message]) -> None:
        await self._records.save_model(
            CONVERSATION_KEY, _ConversationRecord(messages=list(messages))
        )

    async def clear(self) -> None:
        await self._records.delete(CONVERSATION_KEY)


class FileDescriptionStore:
    """
    Stored one-line descriptions of attachments, keyed by filename.

    Descriptions are written after a turn completes and used to annotate
    filenames when history is summarized.
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records
        self._cache: dict[str, str] | None = None

    async def _load(self) -> dict[str, str]:
        if self._cache is None:
            try:
                data = await self._records.get_json(FILE_DESCRIPTIONS_KEY)
            except CorruptRecordError as exc:
                _logger.error("record_corrupt", key=FILE_DESCRIPTIONS_KEY, error=str(exc))
                data = None
            self._cache = (
                {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}
            )
        return self._cache

    async def get(self, file_name: str) -> str | None:
        return (await self._load()).get(file_name)

    async def get_many(self, file_names: Iterable[str]) -> dict[str, str]:
        known = await self._load()
        return {name: known[name] for name in file_names if name in known}

    async def set_many(self, descriptions: dict[str, str]) -> None:
        if not descriptions:
            return
        known = await self._load()
        known.update(descriptions)
        await self._records.put_json(FILE_DESCRIPTIONS_KEY, known)

    async def clear(self) -> None:
        self._cache = {}
        await self._records.delete(FILE_DESCRIPTIONS_KEY)


class SettingsStore:
    """Persists the user-switchable provider settings."""

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def load(self) -> Settings:
        return await self._records.load_model(SETTINGS_KEY, Settings, Settings())

    async def save(self, settings: Settings) -> None:
        await self._records.save_model(SETTINGS_KEY, settings)
