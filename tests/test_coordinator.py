"""Integration tests for TurnCoordinator with scripted collaborators."""

from __future__ import annotations

import asyncio

from concierge.coordinator import (
    ARCHIVING_NOTICE,
    BUSY_NOTICE,
    IDLE_NOTICE,
    REMINDER_NOTICE,
    STATUS_CANCELLED,
    STATUS_CONFIGURATION,
    STATUS_ERROR,
    STATUS_LISTENING,
    STOPPED_NOTICE,
    ConfigurationError,
    EmailAttachment,
    IncomingEmail,
    MailTrigger,
    ReminderTrigger,
    UserMessageTrigger,
    command_token,
    image_caption,
    mail_content,
)
from concierge.events.bus import ConciergeEvent
from concierge.models.settings import CodeCLIProvider, TranscriptionProvider
from concierge.models.tools import FileAttachment, GeneratedImage, TextResponse, ToolOutputs
from concierge.store.conversation import TOOL_LOG_PREFIX, ConversationStore, SettingsStore
from tests.conftest import SUMMARY_JSON, make_message, make_messages, tool_call, tool_calls_response


def user(text: str, **fields) -> UserMessageTrigger:
    return UserMessageTrigger(message=make_message(text, index=100, **fields))


def events_of(bus, event):
    return [payload for e, payload in bus.collected if e == event]


async def preload(records, coordinator, messages):
    await ConversationStore(records).save(messages)
    await coordinator.reload()


async def wait_for_calls(completion, count: int) -> None:
    while len(completion.calls) < count:
        await asyncio.sleep(0)


async def archived_message_ids(archive) -> set[str]:
    ids: set[str] = set()
    for chunk in archive.all_chunks():
        ids.update(m.id for m in await archive.chunk_messages(chunk.id))
    return ids


class TestTurn:
    async def test_user_message_gets_reply(self, coordinator, transport, records, event_bus):
        token = await coordinator.submit(user("Hi there"))
        assert token is not None
        await coordinator.join()

        assert transport.texts == ["All done."]
        assert [m.content for m in coordinator.messages] == ["Hi there", "All done."]
        assert [m.content for m in await ConversationStore(records).load()] == [
            "Hi there",
            "All done.",
        ]
        assert coordinator.status == STATUS_LISTENING
        assert not coordinator.is_running
        completed = events_of(event_bus, ConciergeEvent.RUN_COMPLETED)
        assert completed[0]["run_id"] == token.run_id
        assert completed[0]["stop_reason"] == "text"

    async def test_request_carries_turn_context(self, coordinator, llm):
        trigger = user("What's on today?")
        await coordinator.submit(trigger)
        await coordinator.join()
        req = llm.requests[0]
        assert req.current_user_message_id == trigger.message.id
        assert req.messages[-1].id == trigger.message.id
        assert req.total_chunk_count == 0

    async def test_tool_run_records_log_and_projects(self, coordinator, llm):
        llm.responses = [
            tool_calls_response(tool_call("run_claude_code", "1", project_id="site")),
            TextResponse(text="Deployed."),
        ]
        await coordinator.submit(user("ship it"))
        await coordinator.join()

        log_message, reply = coordinator.messages[-2:]
        assert log_message.content == f"{TOOL_LOG_PREFIX}\n1. run_claude_code: ok"
        assert reply.content == "Deployed."
        assert reply.accessed_project_ids == ["site"]

    async def test_progress_text_sent_during_run(self, coordinator, llm, transport):
        llm.responses = [tool_calls_response(tool_call("web_search", "1")), TextResponse(text="Found.")]
        await coordinator.submit(user("look it up"))
        await coordinator.join()
        assert transport.texts == ["🔍 Searching the web...", "Found."]

    async def test_tool_logs_pruned_to_limit(self, coordinator, records, llm):
        logs = [
            make_message(f"{TOOL_LOG_PREFIX}\n1. old_{i}: ok", role="assistant", index=i)
            for i in range(5)
        ]
        await preload(records, coordinator, logs)
        llm.responses = [tool_calls_response(tool_call("web_search", "1")), TextResponse(text="ok")]

        await coordinator.submit(user("again"))
        await coordinator.join()

        tool_logs = [m for m in coordinator.messages if m.content.startswith(TOOL_LOG_PREFIX)]
        assert len(tool_logs) == 5
        assert "old_0" not in tool_logs[0].content
        assert tool_logs[-1].content.endswith("web_search: ok")

    async def test_long_reply_is_capped(self, coordinator, llm, transport):
        llm.responses = [TextResponse(text="y" * 5_000)]
        await coordinator.submit(user("essay please"))
        await coordinator.join()
        assert len(transport.texts[-1]) == 4_000
        assert len(coordinator.messages[-1].content) == 4_000

    async def test_generated_outputs_relayed(self, coordinator, executor, transport):
        prompt = "p" * 250
        executor.outputs = ToolOutputs(
            generated_images=[GeneratedImage(data=b"img", prompt=prompt)],
            generated_documents=[
                FileAttachment(filename="report.pdf", mime_type="application/pdf", data=b"pdf"),
                FileAttachment(filename="chart.png", mime_type="image/png", data=b"png"),
            ],
            downloaded_file_names=["invoice.pdf"],
        )

        await coordinator.submit(user("make things"))
        await coordinator.join()

        assert transport.photos == [(b"img", image_caption(prompt)), (b"png", None)]
        assert transport.photos[0][1] == f"🎨 Generated: {'p' * 200}..."
        assert transport.documents == [(b"pdf", "report.pdf", "application/pdf")]
        assert coordinator.messages[-1].downloaded_document_file_names == ["invoice.pdf"]

    async def test_files_described_after_turn(self, coordinator, executor, describer, descriptions):
        executor.outputs = ToolOutputs(downloaded_file_names=["invoice.pdf"])
        await coordinator.submit(user("see attached", image_file_names=["photo.jpg"]))
        await coordinator.join()
        await coordinator.join_background()

        assert describer.requests == [["photo.jpg", "invoice.pdf"]]
        assert await descriptions.get("invoice.pdf") == "description of invoice.pdf"


class TestAdmission:
    async def test_busy_user_message_rejected(self, coordinator, llm, transport, event_bus):
        llm.gate = asyncio.Event()
        first = await coordinator.submit(user("first"))
        second = await coordinator.submit(user("second"))

        assert first is not None
        assert second is None
        assert transport.texts == [BUSY_NOTICE]
        rejected = events_of(event_bus, ConciergeEvent.RUN_REJECTED)
        assert rejected == [{"trigger": "user", "active_run_id": first.run_id}]

        llm.gate.set()
        await coordinator.join()
        assert [m.content for m in coordinator.messages] == ["first", "All done."]

    async def test_reminder_waits_for_active_run(self, coordinator, llm, transport, sleep):
        llm.gate = asyncio.Event()
        await coordinator.submit(user("first"))
        waiter = asyncio.create_task(coordinator.submit(ReminderTrigger(prompt="Stretch!")))
        for _ in range(5):
            await asyncio.sleep(0)

        assert not waiter.done()
        assert sleep.delays and set(sleep.delays) == {1.0}

        llm.gate.set()
        token = await waiter
        assert token is not None
        await coordinator.join()

        assert transport.texts == [REMINDER_NOTICE, "All done.", "All done."]
        reminder = coordinator.messages[2]
        assert reminder.role == "user"
        assert reminder.content.startswith("[SCHEDULED REMINDER")
        assert "Stretch!" in reminder.content
        assert reminder.content.endswith("[END OF REMINDER - Please act on these instructions now]")

    async def test_mail_trigger_starts_run(self, coordinator, llm):
        emails = [
            IncomingEmail(
                id="m1",
                sender="ana@example.com",
                subject="Invoice",
                date="Oct 18",
                body="Please pay.",
                attachments=[EmailAttachment(filename="inv.pdf", mime_type="application/pdf")],
            )
        ]
        await coordinator.submit(MailTrigger(emails=emails))
        await coordinator.join()
        content = llm.requests[0].messages[-1].content
        assert content.startswith("[SYSTEM: NEW EMAILS ARRIVED]")
        assert "From: ana@example.com\nSubject: Invoice\nDate: Oct 18\nID: m1" in content
        assert "Body:\nPlease pay." in content
        assert content.endswith("Attachments: inv.pdf (application/pdf)")

    async def test_empty_mail_trigger_ignored(self, coordinator):
        assert await coordinator.submit(MailTrigger(emails=[])) is None
        assert coordinator.messages == []

    def test_mail_content_joins_blocks(self):
        emails = [IncomingEmail(id="a"), IncomingEmail(id="b", body="hi")]
        content = mail_content(emails)
        assert "ID: a\n---\nFrom: Unknown" in content
        assert content.endswith("ID: b\nBody:\nhi")


class TestCancellation:
    async def test_stop_cancels_active_run(self, coordinator, llm, executor, transport, event_bus):
        llm.gate = asyncio.Event()
        token = await coordinator.submit(user("long task"))
        await asyncio.sleep(0)

        assert await coordinator.submit(user("/stop")) is None
        await coordinator.join_background()

        assert transport.texts == [STOPPED_NOTICE]
        assert executor.cancel_count == 1
        assert executor.clear_count >= 1
        assert coordinator.status == STATUS_CANCELLED
        assert not coordinator.is_running
        assert not token.is_current()
        assert [m.content for m in coordinator.messages] == ["long task"]
        assert events_of(event_bus, ConciergeEvent.RUN_CANCELLED) == [{"run_id": token.run_id}]

    async def test_stop_when_idle(self, coordinator, transport):
        assert await coordinator.cancel() is False
        assert transport.texts == [IDLE_NOTICE]

    async def test_next_message_accepted_after_stop(self, coordinator, llm, transport):
        llm.gate = asyncio.Event()
        await coordinator.submit(user("first"))
        await coordinator.submit(user("/stop"))
        await coordinator.join_background()

        llm.gate.set()
        assert await coordinator.submit(user("second")) is not None
        await coordinator.join()
        assert transport.texts == [STOPPED_NOTICE, "All done."]


class TestControlCommands:
    def test_command_token(self):
        assert command_token("/Stop@ConciergeBot now") == "/stop"
        assert command_token("  /spend ") == "/spend"
        assert command_token("") == ""

    async def test_spend_snapshot(self, coordinator, ledger, transport):
        await ledger.record(0.5)
        await coordinator.submit(user("/spend"))
        assert transport.texts == ["💸 Spend\nToday: $0.50\nThis month: $0.50"]
        assert coordinator.messages == []

    async def test_switch_code_cli(self, coordinator, records, transport):
        await coordinator.submit(user("/gemini@ConciergeBot"))
        await coordinator.submit(user("/gemini"))
        assert transport.texts == [
            "✅ Switched Code CLI to Gemini CLI.",
            "✅ Code CLI already set to Gemini CLI.",
        ]
        assert coordinator.settings.code_cli_provider is CodeCLIProvider.GEMINI
        assert (await SettingsStore(records).load()).code_cli_provider is CodeCLIProvider.GEMINI

    async def test_switch_during_run_applies_next_time(self, coordinator, llm, transport):
        llm.gate = asyncio.Event()
        await coordinator.submit(user("work"))
        await coordinator.submit(user("/codex"))
        assert transport.texts == [
            "✅ Switched Code CLI to Codex CLI. It will apply to the next delegated run."
        ]
        llm.gate.set()
        await coordinator.join()

    async def test_switch_transcription(self, coordinator, transport):
        await coordinator.submit(user("/transcribe_openai"))
        assert transport.texts == ["✅ Switched voice transcription to OpenAI transcription."]
        assert coordinator.settings.transcription_provider is TranscriptionProvider.OPENAI


class TestArchiving:
    async def test_overflow_archived_before_llm_call(self, coordinator, records, archive, llm):
        """Messages beyond the window are archived and the request sees the remainder."""
        history = make_messages(5, tokens=2_000)
        await preload(records, coordinator, history)

        trigger = user("hi")
        await coordinator.submit(trigger)
        await coordinator.join()

        assert archive.chunk_count == 1
        chunk = archive.all_chunks()[0]
        assert chunk.message_count == 2
        req = llm.requests[0]
        assert [m.id for m in req.messages] == [m.id for m in history[2:]] + [trigger.message.id]
        assert [c.id for c in req.chunk_summaries] == [chunk.id]
        assert req.total_chunk_count == 1
        assert coordinator.messages[0].id == history[2].id
        stored = await ConversationStore(records).load()
        assert stored[0].id == history[2].id

    async def test_summarizer_gets_live_tail(self, coordinator, records, completion):
        await preload(records, coordinator, make_messages(5, tokens=2_000))
        await coordinator.submit(user("hi"))
        await coordinator.join()
        system_prompt = completion.calls[0][0]
        assert "CURRENT CONVERSATION" in system_prompt
        assert "[User]: hi" in system_prompt

    async def test_archive_retry_notifies_once(self, coordinator, records, completion, transport):
        await preload(records, coordinator, make_messages(5, tokens=2_000))
        completion.replies = [RuntimeError("429"), RuntimeError("503"), SUMMARY_JSON]

        await coordinator.submit(user("hi"))
        await coordinator.join()

        assert transport.texts.count(ARCHIVING_NOTICE) == 1
        assert transport.texts[-1] == "All done."

    async def test_stop_during_consolidation_keeps_window_and_archive_disjoint(
        self, coordinator, records, archive, completion, llm
    ):
        """Messages committed to a chunk leave the window even when the run is stopped."""
        for n in range(5):
            await archive.archive([make_message(f"older {n}", index=n - 100)])
        history = make_messages(5, tokens=2_000)
        await preload(records, coordinator, history)
        summary_gate = completion.gate = asyncio.Event()
        merge_gate = asyncio.Event()
        llm.gate = asyncio.Event()

        await coordinator.submit(user("hi"))
        await wait_for_calls(completion, 6)
        completion.gate = merge_gate
        summary_gate.set()
        await wait_for_calls(completion, 7)
        while not llm.requests:
            await asyncio.sleep(0)
        assert archive.consolidation_in_progress

        assert await coordinator.cancel() is True

        archived = await archived_message_ids(archive)
        assert {m.id for m in history[:2]} <= archived
        assert archived.isdisjoint(m.id for m in coordinator.messages)
        assert archived.isdisjoint(m.id for m in await ConversationStore(records).load())

        merge_gate.set()
        await coordinator.join_background()
        assert [c.type for c in archive.all_chunks()] == ["consolidated", "temporary", "temporary"]
        assert (await archived_message_ids(archive)).isdisjoint(
            m.id for m in coordinator.messages
        )

    async def test_stop_while_summarizing_keeps_messages_live(
        self, coordinator, records, archive, completion
    ):
        """An uncommitted batch stays in the window and its pending record is kept."""
        history = make_messages(5, tokens=2_000)
        await preload(records, coordinator, history)
        completion.gate = asyncio.Event()

        await coordinator.submit(user("hi"))
        await wait_for_calls(completion, 1)
        await coordinator.cancel()
        await coordinator.join_background()

        assert coordinator.status == STATUS_CANCELLED
        assert archive.chunk_count == 0
        assert len(archive.pending_chunks) == 1
        assert [m.id for m in coordinator.messages][:5] == [m.id for m in history]
        stored = await ConversationStore(records).load()
        assert [m.id for m in stored][:5] == [m.id for m in history]

    async def test_delete_all_memory(self, coordinator, archive, descriptions):
        await archive.archive([make_message("old", index=1)])
        await descriptions.set_many({"a.jpg": "a cat"})
        await coordinator.submit(user("hello"))
        await coordinator.join()

        await coordinator.delete_all_memory()

        assert coordinator.messages == []
        assert archive.chunk_count == 0
        assert await descriptions.get("a.jpg") is None


class TestFailures:
    async def test_unexpected_error_sets_status(self, coordinator, llm, event_bus, transport):
        llm.responses = [RuntimeError("provider exploded")]
        token = await coordinator.submit(user("hi"))
        await coordinator.join()

        assert coordinator.status == STATUS_ERROR
        assert not coordinator.is_running
        failed = events_of(event_bus, ConciergeEvent.RUN_FAILED)
        assert failed == [{"run_id": token.run_id, "error": "provider exploded"}]
        assert transport.texts == []

    async def test_configuration_error_reported_once(self, coordinator, llm, transport):
        llm.responses = [ConfigurationError("The model API key is missing.")]
        await coordinator.submit(user("hi"))
        await coordinator.join()

        assert transport.texts == ["⚠️ The model API key is missing."]
        assert coordinator.status == STATUS_CONFIGURATION
        assert len(llm.requests) == 1
