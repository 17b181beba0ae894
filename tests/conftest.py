"""Shared fixtures and scripted collaborators for Concierge tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import date
from typing import Any

import pytest
import pytest_asyncio

from concierge.agent.protocols import LLMRequest
from concierge.agent.spend import SpendLedger
from concierge.agent.tool_loop import ToolLoopEngine
from concierge.archive.store import ArchiveStore
from concierge.archive.summarizer import Summarizer
from concierge.coordinator import TurnCoordinator
from concierge.events.bus import ConciergeEvent, EventBus
from concierge.models.config import ArchiveConfig, ConciergeConfig, StoreConfig
from concierge.models.message import Message
from concierge.models.tools import (
    AssistantToolCallMessage,
    LLMResponse,
    TextResponse,
    ToolCall,
    ToolCallsResponse,
    ToolDefinition,
    ToolOutputs,
    ToolResult,
)
from concierge.retry import RetryPolicy
from concierge.store.conversation import ConversationStore, FileDescriptionStore, SettingsStore
from concierge.store.pool import StorePool
from concierge.store.records import SQLiteRecordStore
from concierge.tokens.estimator import TokenEstimator

BASE_TS = 1_760_000_000_000
"""Fixed unix-ms origin for deterministic message timestamps."""

SUMMARY_JSON = json.dumps({"summary": "Talked about plans", "key_topics": ["plans"]})


def make_message(
    content: str = "hello",
    role: str = "user",
    *,
    tokens: int | None = None,
    index: int = 0,
    **fields: Any,
) -> Message:
    """Message whose estimated cost is ``tokens`` when given (4 chars per token)."""
    if tokens is not None:
        content = "x" * (tokens * 4)
    return Message(role=role, content=content, timestamp=BASE_TS + index * 60_000, **fields)


def make_messages(count: int, tokens: int) -> list[Message]:
    return [
        make_message(role="user" if i % 2 == 0 else "assistant", tokens=tokens, index=i)
        for i in range(count)
    ]


def tool_call(name: str, call_id: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


def tool_calls_response(*calls: ToolCall, spend_usd: float | None = None) -> ToolCallsResponse:
    return ToolCallsResponse(
        assistant_message=AssistantToolCallMessage(tool_calls=list(calls)),
        spend_usd=spend_usd,
    )


# ── Scripted collaborators ─────────────────────────────────────────────────────


class ScriptedCompletion:
    """Completion function returning queued replies; exceptions in the queue are raised."""

    def __init__(self, replies: Sequence[str | Exception] = ()) -> None:
        self.replies: list[str | Exception] = list(replies)
        self.calls: list[tuple[str, str, int]] = []
        self.default = SUMMARY_JSON
        self.gate: asyncio.Event | None = None

    async def __call__(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        self.calls.append((system_prompt, user_prompt, max_tokens))
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


class ScriptedLLM:
    """LLM client returning queued responses (raising queued exceptions), then plain text."""

    def __init__(self, responses: Sequence[LLMResponse | Exception] = ()) -> None:
        self.responses: list[LLMResponse | Exception] = list(responses)
        self.requests: list[LLMRequest] = []
        self.gate: asyncio.Event | None = None

    async def generate(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return TextResponse(text="All done.")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeExecutor:
    """Tool executor that answers every call and can return results out of order."""

    def __init__(self) -> None:
        self.executed: list[list[ToolCall]] = []
        self.contents: dict[str, str] = {}
        self.reverse_results = False
        self.outputs = ToolOutputs()
        self.cancel_count = 0
        self.clear_count = 0
        self.gate: asyncio.Event | None = None

    async def execute_parallel(self, calls: Sequence[ToolCall]) -> list[ToolResult]:
        self.executed.append(list(calls))
        if self.gate is not None:
            await self.gate.wait()
        results = [
            ToolResult(
                tool_call_id=c.id, content=self.contents.get(c.name, '{"success": true}')
            )
            for c in calls
        ]
        return list(reversed(results)) if self.reverse_results else results

    def cancel_all(self) -> None:
        self.cancel_count += 1

    def drain_outputs(self) -> ToolOutputs:
        outputs, self.outputs = self.outputs, ToolOutputs()
        return outputs

    def clear_outputs(self) -> None:
        self.clear_count += 1
        self.outputs = ToolOutputs()


class FakeTransport:
    """Chat transport recording everything sent."""

    def __init__(self) -> None:
        self.texts: list[str] = []
        self.photos: list[tuple[bytes, str | None]] = []
        self.documents: list[tuple[bytes, str, str]] = []

    async def send_text(self, text: str) -> None:
        self.texts.append(text)

    async def send_photo(self, data: bytes, *, caption: str | None = None) -> None:
        self.photos.append((data, caption))

    async def send_document(
        self,
        data: bytes,
        *,
        file_name: str,
        mime_type: str,
        caption: str | None = None,
    ) -> None:
        self.documents.append((data, file_name, mime_type))


class FakeDescriber:
    def __init__(self) -> None:
        self.requests: list[list[str]] = []

    async def describe(
        self, file_names: Sequence[str], conversation: Sequence[Message]
    ) -> dict[str, str]:
        self.requests.append(list(file_names))
        return {name: f"description of {name}" for name in file_names}


class RecordingSleep:
    """Sleep replacement that records delays and yields control without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path):
    """ConciergeConfig with a temp data directory and the smallest chunk size."""
    return ConciergeConfig(
        archive=ArchiveConfig(chunk_size=5_000),
        store=StoreConfig(path=str(tmp_path / "data")),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def records(config, pool):
    """Initialized SQLite record store (pool-managed)."""
    s = SQLiteRecordStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def estimator():
    return TokenEstimator()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[ConciergeEvent, dict[str, Any]]] = []

    def _collect(event: ConciergeEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def descriptions(records):
    return FileDescriptionStore(records)


@pytest.fixture
def summarizer(completion, config, descriptions):
    return Summarizer(completion, config.archive, descriptions)


@pytest.fixture
def retry(config, sleep):
    return RetryPolicy(config.retry, sleep=sleep)


@pytest_asyncio.fixture
async def archive(records, summarizer, config, retry, event_bus):
    """Initialized ArchiveStore with instant retries."""
    a = ArchiveStore(records, summarizer, config.archive, retry=retry, event_bus=event_bus)
    await a.initialize()
    return a


@pytest.fixture
def today():
    return date(2026, 10, 18)


@pytest.fixture
def ledger(records, config, today):
    return SpendLedger(records, config.spend, today=lambda: today)


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def describer():
    return FakeDescriber()


@pytest.fixture
def tools():
    names = [
        "web_search",
        "manage_calendar",
        "create_project",
        "run_claude_code",
        "show_project_deployment_tools",
        "deploy_project_to_vercel",
        "provision_project_database",
    ]
    return [ToolDefinition(name=name) for name in names]


@pytest.fixture
def engine(llm, executor, tools, ledger, config, event_bus):
    return ToolLoopEngine(
        llm,
        executor,
        tools,
        ledger=ledger,
        config=config.tool_loop,
        spend_config=config.spend,
        event_bus=event_bus,
    )


@pytest_asyncio.fixture
async def coordinator(
    config,
    records,
    archive,
    engine,
    executor,
    transport,
    ledger,
    descriptions,
    describer,
    event_bus,
    sleep,
):
    """Started TurnCoordinator wired to the scripted collaborators."""
    c = TurnCoordinator(
        config,
        ConversationStore(records, max_tool_logs=config.coordinator.max_retained_tool_logs),
        archive,
        engine,
        executor,
        transport,
        settings=SettingsStore(records),
        ledger=ledger,
        descriptions=descriptions,
        describer=describer,
        event_bus=event_bus,
        sleep=sleep,
    )
    await c.start()
    yield c
    await c.close()
