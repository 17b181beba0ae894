"""
Example 01: Console Turns
=========================

Drives a TurnCoordinator end to end with in-memory collaborators:
- A console chat transport that prints what the assistant sends
- A scripted agent LLM that calls one tool, then answers
- Archive summaries from the mock completion mode
- Long messages so the window overflows and a chunk is archived

Run without an API key:
    CONCIERGE_MOCK_LLM=1 uv run python examples/01_console_turns.py

Run with real summaries (set your provider key first):
    OPENROUTER_API_KEY=... uv run python examples/01_console_turns.py
"""

import asyncio
import json
import sys
import tempfile
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class ConsoleChat:
    async def send_text(self, text):
        print(f"  assistant> {text}")

    async def send_photo(self, data, *, caption=None):
        print(f"  assistant> [photo {len(data)} bytes] {caption or ''}")

    async def send_document(self, data, *, file_name, mime_type, caption=None):
        print(f"  assistant> [document {file_name} ({mime_type})]")


class CalendarOnlyExecutor:
    async def execute_parallel(self, calls):
        from concierge.models.tools import ToolResult

        return [
            ToolResult(tool_call_id=c.id, content=json.dumps({"eventCount": 2})) for c in calls
        ]

    def cancel_all(self):
        pass

    def drain_outputs(self):
        from concierge.models.tools import ToolOutputs

        return ToolOutputs()

    def clear_outputs(self):
        pass


class ScriptedAgent:
    """Looks at the calendar on the first round of every turn, then replies."""

    async def generate(self, request):
        from concierge.models.tools import (
            AssistantToolCallMessage,
            TextResponse,
            ToolCall,
            ToolCallsResponse,
        )

        if request.tools and not request.prior_interactions:
            call = ToolCall(id="call_1", name="manage_calendar", arguments='{"action": "list"}')
            return ToolCallsResponse(
                assistant_message=AssistantToolCallMessage(tool_calls=[call]), spend_usd=0.002
            )
        summaries = len(request.chunk_summaries)
        return TextResponse(
            text=f"Noted. ({len(request.messages)} messages in view, {summaries} archived chunks)",
            spend_usd=0.001,
        )


async def main() -> None:
    from concierge import (
        ArchiveConfig,
        ArchiveStore,
        ConciergeConfig,
        ConversationStore,
        Message,
        RetryPolicy,
        SpendLedger,
        Summarizer,
        ToolDefinition,
        ToolLoopEngine,
        TurnCoordinator,
        UserMessageTrigger,
        make_completion_fn,
    )
    from concierge.models.config import StoreConfig
    from concierge.store import FileDescriptionStore, SettingsStore, SQLiteRecordStore, StorePool

    print("=== Concierge Console Turns Example ===\n")

    data_dir = tempfile.mkdtemp(prefix="concierge_example_01_")
    config = ConciergeConfig(
        archive=ArchiveConfig(chunk_size=5_000),  # Smallest window, archives sooner
        store=StoreConfig(path=data_dir),
    )

    pool = StorePool()
    records = SQLiteRecordStore(config.store, pool=pool)
    await records.initialize()

    descriptions = FileDescriptionStore(records)
    summarizer = Summarizer(
        make_completion_fn(config.archive.summarization_model), config.archive, descriptions
    )
    archive = ArchiveStore(records, summarizer, config.archive, retry=RetryPolicy(config.retry))
    ledger = SpendLedger(records, config.spend)
    executor = CalendarOnlyExecutor()
    engine = ToolLoopEngine(
        ScriptedAgent(),
        executor,
        [ToolDefinition(name="manage_calendar", description="List or edit calendar events")],
        ledger=ledger,
        config=config.tool_loop,
        spend_config=config.spend,
    )
    coordinator = TurnCoordinator(
        config,
        ConversationStore(records),
        archive,
        engine,
        executor,
        ConsoleChat(),
        settings=SettingsStore(records),
        ledger=ledger,
        descriptions=descriptions,
    )
    await coordinator.start()

    # ~3,000 estimated tokens each: the fourth turn pushes the window past 10k
    notes = [
        f"Meeting notes part {i}: " + "budget review and hiring plans. " * 370 for i in range(1, 6)
    ]
    try:
        for i, note in enumerate(notes, 1):
            print(f"Turn {i}: user> {note[:40]}...")
            await coordinator.submit(UserMessageTrigger(message=Message(role="user", content=note)))
            await coordinator.join()
            print(f"  status: {coordinator.status}, archived chunks: {archive.chunk_count}\n")

        await coordinator.submit(UserMessageTrigger(message=Message(role="user", content="/spend")))

        for chunk in archive.all_chunks():
            print(f"\nChunk {chunk.id} ({chunk.message_count} messages, {chunk.size_label} tokens)")
            print(f"  {chunk.summary[:160]}")
    finally:
        await coordinator.close()
        await pool.close_all()


if __name__ == "__main__":
    asyncio.run(main())
