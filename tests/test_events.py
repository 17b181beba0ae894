"""Tests for EventBus and the summarizer's mock completion mode."""

from __future__ import annotations

import asyncio
import json

import structlog.testing

from concierge.archive.summarizer import extract_first_json_object, make_completion_fn
from concierge.events.bus import ConciergeEvent, EventBus


class TestEventBus:
    def test_subscribe_and_publish(self):
        bus = EventBus()
        seen: list[tuple[ConciergeEvent, dict]] = []
        bus.subscribe(ConciergeEvent.STATUS_CHANGED, lambda e, p: seen.append((e, p)))
        bus.publish(ConciergeEvent.STATUS_CHANGED, {"status": "Listening..."})
        bus.publish(ConciergeEvent.RUN_STARTED, {"run_id": "run_1"})
        assert seen == [(ConciergeEvent.STATUS_CHANGED, {"status": "Listening..."})]

    def test_subscribe_all_receives_everything(self, event_bus):
        event_bus.publish(ConciergeEvent.RUN_STARTED, {"run_id": "r"})
        event_bus.publish(ConciergeEvent.ARCHIVE_RECOVERED, {"recovered": 0})
        assert [e for e, _ in event_bus.collected] == [
            ConciergeEvent.RUN_STARTED,
            ConciergeEvent.ARCHIVE_RECOVERED,
        ]

    def test_unsubscribe(self):
        bus = EventBus()
        seen: list[ConciergeEvent] = []

        def handler(event, payload):
            seen.append(event)

        bus.subscribe(ConciergeEvent.RUN_FAILED, handler)
        bus.unsubscribe(ConciergeEvent.RUN_FAILED, handler)
        bus.unsubscribe(ConciergeEvent.RUN_FAILED, handler)
        bus.publish(ConciergeEvent.RUN_FAILED, {"run_id": "r", "error": "x"})
        assert seen == []

    def test_handler_errors_are_swallowed(self):
        bus = EventBus()
        seen: list[ConciergeEvent] = []

        def broken(event, payload):
            raise ValueError("handler bug")

        bus.subscribe(ConciergeEvent.RUN_COMPLETED, broken)
        bus.subscribe(ConciergeEvent.RUN_COMPLETED, lambda e, p: seen.append(e))
        bus.publish(ConciergeEvent.RUN_COMPLETED, {"run_id": "r"})
        assert seen == [ConciergeEvent.RUN_COMPLETED]

    def test_handler_error_is_logged_with_event_type(self):
        bus = EventBus()

        def broken(event, payload):
            raise ValueError("status subscriber bug")

        bus.subscribe(ConciergeEvent.STATUS_CHANGED, broken)
        with structlog.testing.capture_logs() as logs:
            bus.publish(ConciergeEvent.STATUS_CHANGED, {"status": "Listening..."})

        errors = [entry for entry in logs if entry["event"] == "event_handler_error"]
        assert errors[0]["event_type"] == "status.changed"
        assert errors[0]["error"] == "status subscriber bug"

    async def test_async_handler_scheduled(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event, payload):
            await asyncio.sleep(0)
            seen.append(payload["run_id"])

        bus.subscribe(ConciergeEvent.RUN_CANCELLED, handler)
        bus.publish(ConciergeEvent.RUN_CANCELLED, {"run_id": "r"})
        assert seen == []
        await bus.drain()
        assert seen == ["r"]

    async def test_async_handler_failure_is_contained(self):
        bus = EventBus()

        async def handler(event, payload):
            raise ValueError("async handler bug")

        bus.subscribe(ConciergeEvent.RUN_FAILED, handler)
        bus.publish(ConciergeEvent.RUN_FAILED, {"run_id": "r", "error": "x"})
        await bus.drain()

    def test_async_handler_without_loop_is_dropped(self):
        bus = EventBus()

        async def handler(event, payload):
            raise AssertionError("must not run")

        bus.subscribe(ConciergeEvent.RUN_CANCELLED, handler)
        bus.publish(ConciergeEvent.RUN_CANCELLED, {"run_id": "r"})


class TestJsonExtraction:
    def test_first_object_with_braces_in_strings(self):
        text = 'Sure! {"summary": "a {tricky} one", "key_topics": []} trailing {"x": 1}'
        assert json.loads(extract_first_json_object(text)) == {
            "summary": "a {tricky} one",
            "key_topics": [],
        }

    def test_no_object(self):
        assert extract_first_json_object("plain text") is None
        assert extract_first_json_object('{"unterminated": ') is None


class TestMockCompletion:
    async def test_mock_summary(self, monkeypatch):
        monkeypatch.setenv("CONCIERGE_MOCK_LLM", "1")
        complete = make_completion_fn("test-model")
        reply = await complete("Summarize. OUTPUT STRICT JSON", "[User]: hi there", 100)
        data = json.loads(reply)
        assert data["key_topics"] == ["mock"]
        assert "[User]: hi there" in data["summary"]

    async def test_mock_excerpts(self, monkeypatch):
        monkeypatch.setenv("CONCIERGE_MOCK_LLM", "1")
        complete = make_completion_fn("test-model")
        reply = await complete('OUTPUT STRICT JSON: { "excerpts": [] }', "QUERY: x", 100)
        assert json.loads(reply) == {"excerpts": []}
