"""Single-flight turn coordinator: admission, cancellation, archiving and finalization."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Annotated, Literal

import structlog
from jinja2 import Template
from pydantic import BaseModel, Field

from concierge.agent.protocols import (
    ChatTransport,
    ContextProvider,
    FileDescriber,
    LLMRequest,
    ToolExecutor,
)
from concierge.agent.spend import SpendLedger, format_usd
from concierge.agent.tool_loop import EMPTY_RESPONSE_TEXT, ToolLoopEngine, ToolLoopResult
from concierge.archive.store import ArchiveStore
from concierge.events.bus import ConciergeEvent, EventBus
from concierge.ids import make_id, now_ms
from concierge.models.chunk import Chunk, SummarizationContext
from concierge.models.config import ConciergeConfig
from concierge.models.message import Message
from concierge.models.settings import CodeCLIProvider, Settings, TranscriptionProvider
from concierge.models.tools import ToolOutputs
from concierge.store.conversation import (
    ConversationStore,
    FileDescriptionStore,
    SettingsStore,
    prune_tool_logs,
)
from concierge.tokens.estimator import ContextWindow, TokenEstimator, split_window

BUSY_NOTICE = "⏳ I'm still working on your previous request. Send /stop to interrupt it."
STOPPED_NOTICE = "⛔ Stopped current execution."
IDLE_NOTICE = "Nothing is currently running."
ARCHIVING_NOTICE = "📦 Archiving conversation history, please wait..."
REMINDER_NOTICE = "⏰ Reminder triggered!"

STATUS_LISTENING = "Listening..."
STATUS_GENERATING = "Generating response..."
STATUS_ARCHIVING = "Archiving conversation history..."
STATUS_CANCELLED = "Cancelled"
STATUS_ERROR = "Error generating response"
STATUS_CONFIGURATION = "Configuration required"

_IMAGE_CAPTION_CHARS = 200

REMINDER_TEMPLATE = Template(
    """\
[SCHEDULED REMINDER - This is a message you wrote to yourself earlier]

{{ prompt }}

[END OF REMINDER - Please act on these instructions now]"""
)

MAIL_TEMPLATE = Template(
    """\
[SYSTEM: NEW EMAILS ARRIVED]
The following new emails have just arrived in your inbox. Please tell the user about them naturally.
If they seem unimportant (spam, promotions, newsletters), you can briefly mention them or skip \
detailing them, but you must still reply.
You have access to your full toolset, so you can perform actions like replying to the emails \
directly if appropriate.

New emails:
{% for email in emails %}
---
From: {{ email.sender }}
Subject: {{ email.subject }}
Date: {{ email.date }}
ID: {{ email.id }}
{% if email.body %}
Body:
{{ email.body }}
{% endif %}
{% if email.attachments %}
Attachments: {{ email.attachments | map(attribute="label") | join(", ") }}
{% endif %}
{% endfor %}""",
    trim_blocks=True,
)

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ConfigurationError(Exception):
    """
    A collaborator is missing required configuration (API key, model).

    Reported to the user once; the turn is not retried.
    """


class RunSupersededError(Exception):
    """Raised at a suspension point when the run is no longer the active one."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id!r} is no longer active")
        self.run_id = run_id


# ── Triggers ───────────────────────────────────────────────────────────────────


class UserMessageTrigger(BaseModel):
    kind: Literal["user"] = "user"
    message: Message


class ReminderTrigger(BaseModel):
    kind: Literal["reminder"] = "reminder"
    prompt: str
    reminder_id: str | None = None


class EmailAttachment(BaseModel):
    filename: str
    mime_type: str = "unknown"

    @property
    def label(self) -> str:
        return f"{self.filename} ({self.mime_type})"


class IncomingEmail(BaseModel):
    id: str
    sender: str = "Unknown"
    subject: str = "(No subject)"
    date: str = ""
    body: str = ""
    attachments: list[EmailAttachment] = Field(default_factory=list)


class MailTrigger(BaseModel):
    kind: Literal["mail"] = "mail"
    emails: list[IncomingEmail]


Trigger = Annotated[
    UserMessageTrigger | ReminderTrigger | MailTrigger, Field(discriminator="kind")
]


def reminder_content(prompt: str) -> str:
    return REMINDER_TEMPLATE.render(prompt=prompt)


def mail_content(emails: Sequence[IncomingEmail]) -> str:
    return MAIL_TEMPLATE.render(emails=emails).rstrip("\n")


def command_token(text: str) -> str:
    """First whitespace-separated token, lower-cased, with any ``@botname`` suffix removed."""
    parts = text.strip().split()
    if not parts:
        return ""
    return parts[0].lower().split("@", 1)[0]


def image_caption(prompt: str) -> str:
    suffix = "..." if len(prompt) > _IMAGE_CAPTION_CHARS else ""
    return f"🎨 Generated: {prompt[:_IMAGE_CAPTION_CHARS]}{suffix}"


# ── Run token ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunToken:
    """Identity of one admitted run, checked at every suspension point."""

    run_id: str
    _active_run_id: Callable[[], str | None] = field(repr=False, compare=False)

    def is_current(self) -> bool:
        return self._active_run_id() == self.run_id

    def raise_if_stale(self) -> None:
        if not self.is_current():
            raise RunSupersededError(self.run_id)


# ── Coordinator ────────────────────────────────────────────────────────────────


class TurnCoordinator:
    """
    Owns the single active run for the paired chat.

    - User messages arriving while a run is active are rejected with a notice.
    - Reminder and mail triggers wait for the active run to finish, then start
      their own run.
    - ``/stop`` (or :meth:`cancel`) aborts the active run and its tools.
    - Control commands are handled before admission and never start a run.

    Every suspension point inside a run re-validates the :class:`RunToken`;
    stale work never mutates the conversation or sends output.

    Example::

        coordinator = TurnCoordinator(config, conversation, archive, engine, executor, chat,
                                      settings=settings, ledger=ledger)
        await coordinator.start()
        await coordinator.submit(UserMessageTrigger(message=Message(role="user", content="hi")))
    """

    def __init__(
        self,
        config: ConciergeConfig,
        conversation: ConversationStore,
        archive: ArchiveStore,
        engine: ToolLoopEngine,
        executor: ToolExecutor,
        transport: ChatTransport,
        *,
        settings: SettingsStore,
        ledger: SpendLedger,
        descriptions: FileDescriptionStore | None = None,
        context_provider: ContextProvider | None = None,
        describer: FileDescriber | None = None,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._conversation = conversation
        self._archive = archive
        self._engine = engine
        self._executor = executor
        self._transport = transport
        self._settings_store = settings
        self._ledger = ledger
        self._descriptions = descriptions
        self._context_provider = context_provider
        self._describer = describer
        self._event_bus = event_bus or EventBus()
        self._estimator = estimator or TokenEstimator()
        self._sleep = sleep

        self._messages: list[Message] = []
        self._settings = Settings()
        self._active_run_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._status = STATUS_LISTENING
        self._logger = structlog.get_logger("concierge.coordinator")

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load state and recover any archive work interrupted by a crash."""
        self._messages = await self._conversation.load()
        self._settings = await self._settings_store.load()
        await self._archive.initialize()
        recovered = await self._archive.recover_pending_chunks()
        self._logger.info(
            "coordinator_started", messages=len(self._messages), recovered_chunks=recovered
        )

    async def reload(self) -> None:
        """Re-read the conversation and archive from storage (after an external restore)."""
        self._messages = await self._conversation.load()
        await self._archive.reload()

    async def close(self) -> None:
        """Cancel the active run, background description work and consolidation."""
        await self.cancel(notify=False)
        await self._archive.cancel_consolidation()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def join(self) -> None:
        """Wait for the active run, if any, to finish."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def join_background(self) -> None:
        """Wait for description work, cancelled runs and consolidation to settle."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._archive.wait_for_consolidation()

    # ── State ──────────────────────────────────────────────────────────────────

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def status(self) -> str:
        return self._status

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    @property
    def is_running(self) -> bool:
        return self._active_run_id is not None

    def _set_status(self, status: str) -> None:
        self._status = status
        self._event_bus.publish(ConciergeEvent.STATUS_CHANGED, {"status": status})

    async def _send_quietly(self, text: str) -> None:
        try:
            await self._transport.send_text(text)
        except Exception as exc:
            self._logger.warning("chat_send_failed", error=str(exc))

    # ── Admission ──────────────────────────────────────────────────────────────

    async def submit(self, trigger: Trigger) -> RunToken | None:
        """
        Offer a trigger for processing.

        Returns:
            The token of the started run, or ``None`` when the trigger was a
            control command, was rejected, or carried nothing to process.
        """
        if isinstance(trigger, UserMessageTrigger):
            return await self._submit_user_message(trigger.message)
        if isinstance(trigger, ReminderTrigger):
            await self._send_quietly(REMINDER_NOTICE)
            await self._wait_until_idle()
            message = Message(role="user", content=reminder_content(trigger.prompt))
            return self._admit(message, "reminder")
        if not trigger.emails:
            return None
        await self._wait_until_idle()
        return self._admit(Message(role="user", content=mail_content(trigger.emails)), "mail")

    async def _submit_user_message(self, message: Message) -> RunToken | None:
        if await self.handle_control_command(message.content):
            return None
        if self._active_run_id is not None:
            self._logger.info("run_rejected_busy", active_run_id=self._active_run_id)
            self._event_bus.publish(
                ConciergeEvent.RUN_REJECTED,
                {"trigger": "user", "active_run_id": self._active_run_id},
            )
            await self._send_quietly(BUSY_NOTICE)
            return None
        return self._admit(message, "user")

    async def _wait_until_idle(self) -> None:
        while self._active_run_id is not None or self._task is not None:
            await self._sleep(self._config.coordinator.trigger_wait_interval)

    def _admit(self, message: Message, trigger: str) -> RunToken:
        # No await between the idle check and here: admission is atomic.
        token = RunToken(make_id("run"), lambda: self._active_run_id)
        self._active_run_id = token.run_id
        self._messages.append(message)
        self._set_status(STATUS_GENERATING)
        self._task = asyncio.create_task(self._run(token, message, trigger))
        return token

    async def cancel(self, *, notify: bool = True) -> bool:
        """
        Stop the active run. Idempotent.

        Cancels the run task, aborts in-flight tools, discards their buffered
        outputs and clears the run.

        Returns:
            ``True`` if a run was active.
        """
        run_id = self._active_run_id
        was_running = run_id is not None
        task = self._task
        self._task = None
        self._active_run_id = None
        if task is not None:
            task.cancel()
            self._track_background(task)

        self._executor.cancel_all()
        self._executor.clear_outputs()

        if was_running:
            self._logger.info("run_cancelled", run_id=run_id)
            self._event_bus.publish(ConciergeEvent.RUN_CANCELLED, {"run_id": run_id})
        if notify:
            await self._send_quietly(STOPPED_NOTICE if was_running else IDLE_NOTICE)
        self._set_status(STATUS_CANCELLED if was_running else STATUS_LISTENING)
        return was_running

    # ── Control commands ───────────────────────────────────────────────────────

    async def handle_control_command(self, text: str) -> bool:
        """Handle ``/stop``, ``/spend`` and provider switches. Returns ``True`` if handled."""
        token = command_token(text)
        if token == "/stop":
            await self.cancel()
        elif token == "/spend":
            await self._send_spend_snapshot()
        elif token in ("/claude", "/gemini", "/codex"):
            await self._switch_code_cli(CodeCLIProvider(token[1:]))
        elif token == "/transcribe_local":
            await self._switch_transcription(TranscriptionProvider.LOCAL)
        elif token == "/transcribe_openai":
            await self._switch_transcription(TranscriptionProvider.OPENAI)
        else:
            return False
        if token != "/stop" and self._active_run_id is None:
            self._set_status(STATUS_LISTENING)
        return True

    async def _send_spend_snapshot(self) -> None:
        snapshot = await self._ledger.snapshot()
        await self._send_quietly(
            "💸 Spend\n"
            f"Today: ${format_usd(snapshot.today_usd)}\n"
            f"This month: ${format_usd(snapshot.month_usd)}"
        )

    async def _switch_code_cli(self, provider: CodeCLIProvider) -> None:
        name = provider.display_name
        if self._settings.code_cli_provider == provider:
            await self._send_quietly(f"✅ Code CLI already set to {name}.")
            return
        updated = self._settings.model_copy(update={"code_cli_provider": provider})
        try:
            await self._settings_store.save(updated)
        except Exception as exc:
            self._logger.error("settings_save_failed", setting="code_cli_provider", error=str(exc))
            await self._send_quietly(f"❌ Failed to switch Code CLI to {name}: {exc}")
            return
        self._settings = updated
        self._logger.info("code_cli_switched", provider=str(provider))
        if self._active_run_id is not None:
            await self._send_quietly(
                f"✅ Switched Code CLI to {name}. It will apply to the next delegated run."
            )
        else:
            await self._send_quietly(f"✅ Switched Code CLI to {name}.")

    async def _switch_transcription(self, provider: TranscriptionProvider) -> None:
        name = provider.display_name
        if self._settings.transcription_provider == provider:
            await self._send_quietly(f"✅ Voice transcription already set to {name}.")
            return
        updated = self._settings.model_copy(update={"transcription_provider": provider})
        try:
            await self._settings_store.save(updated)
        except Exception as exc:
            self._logger.error(
                "settings_save_failed", setting="transcription_provider", error=str(exc)
            )
            await self._send_quietly(f"❌ Failed to switch voice transcription to {name}: {exc}")
            return
        self._settings = updated
        self._logger.info("transcription_switched", provider=str(provider))
        await self._send_quietly(f"✅ Switched voice transcription to {name}.")

    # ── Run body ───────────────────────────────────────────────────────────────

    async def _run(self, token: RunToken, message: Message, trigger: str) -> None:
        log = self._logger.bind(run_id=token.run_id, trigger=trigger)
        self._event_bus.publish(
            ConciergeEvent.RUN_STARTED, {"run_id": token.run_id, "trigger": trigger}
        )
        log.info("run_started")
        try:
            await self._conversation.save(self._messages)
            result = await self._generate(token, message, log)
            await self._finalize(token, message, result, log)
        except asyncio.CancelledError:
            self._executor.clear_outputs()
            if token.is_current():
                self._set_status(STATUS_CANCELLED)
            log.info("run_task_cancelled")
            raise
        except RunSupersededError:
            self._executor.clear_outputs()
            log.info("run_superseded")
        except ConfigurationError as exc:
            self._executor.clear_outputs()
            log.error("run_configuration_error", error=str(exc))
            if token.is_current():
                self._set_status(STATUS_CONFIGURATION)
                self._event_bus.publish(
                    ConciergeEvent.RUN_FAILED, {"run_id": token.run_id, "error": str(exc)}
                )
                await self._send_quietly(f"⚠️ {exc}")
        except Exception as exc:
            self._executor.clear_outputs()
            log.exception("run_failed", error=str(exc))
            if token.is_current():
                self._set_status(STATUS_ERROR)
                self._event_bus.publish(
                    ConciergeEvent.RUN_FAILED, {"run_id": token.run_id, "error": str(exc)}
                )
        finally:
            if self._active_run_id == token.run_id:
                self._active_run_id = None
                self._task = None

    async def _gather_context(
        self,
    ) -> tuple[str | None, str | None, list[Chunk], int, ContextWindow]:
        async def _calendar() -> str | None:
            if self._context_provider is None:
                return None
            return await self._context_provider.calendar_context()

        async def _email() -> str | None:
            if self._context_provider is None:
                return None
            return await self._context_provider.email_context()

        async def _summaries() -> list[Chunk]:
            return self._archive.recent_summaries()

        async def _chunk_count() -> int:
            return self._archive.chunk_count

        async def _window() -> ContextWindow:
            return split_window(
                self._messages, self._config.archive.chunk_size, self._estimator
            )

        return await asyncio.gather(_calendar(), _email(), _summaries(), _chunk_count(), _window())

    async def _generate(
        self, token: RunToken, message: Message, log: structlog.BoundLogger
    ) -> ToolLoopResult:
        started_at = now_ms()
        calendar, email, summaries, chunk_count, window = await self._gather_context()
        token.raise_if_stale()

        if window.needs_archiving and window.to_archive:
            await self._archive_window(token, window, summaries, log)
            summaries = self._archive.recent_summaries()
            chunk_count = self._archive.chunk_count

        request = LLMRequest(
            messages=window.to_send,
            calendar_context=calendar,
            email_context=email,
            chunk_summaries=summaries,
            total_chunk_count=chunk_count,
            current_user_message_id=message.id,
            turn_started_at=started_at,
        )

        async def _progress(text: str) -> None:
            if token.is_current():
                await self._transport.send_text(text)

        return await self._engine.run(
            request,
            on_progress=_progress,
            checkpoint=token.raise_if_stale,
            code_cli=self._settings.code_cli_provider,
            logger=log,
        )

    def summarization_context(
        self, summaries: Sequence[Chunk], current: Sequence[Message]
    ) -> SummarizationContext:
        """Persona, chronological chunk summaries and the live conversation tail."""
        coordinator = self._config.coordinator
        persona = self._config.persona
        tail = list(current)[-coordinator.summary_tail_messages :]
        current_text = "\n".join(
            f"[{m.speaker()}]: {m.content[: coordinator.summary_tail_chars]}" for m in tail
        )
        return SummarizationContext(
            persona_context=persona.persona_context,
            assistant_name=persona.assistant_name,
            user_name=persona.user_name,
            previous_summaries=[c.summary for c in sorted(summaries, key=lambda c: c.start_time)],
            current_conversation=current_text or None,
        )

    async def _archive_window(
        self,
        token: RunToken,
        window: ContextWindow,
        summaries: Sequence[Chunk],
        log: structlog.BoundLogger,
    ) -> None:
        self._set_status(STATUS_ARCHIVING)

        async def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            log.warning("archive_retrying", attempt=attempt, delay=delay, error=str(exc))
            if attempt == 1:
                await self._send_quietly(ARCHIVING_NOTICE)

        try:
            chunk = await self._archive.archive(
                window.to_archive,
                self.summarization_context(summaries, window.to_send),
                on_retry=_on_retry,
                should_continue=token.is_current,
            )
        except Exception:
            token.raise_if_stale()
            raise

        # The chunk is committed: its messages leave the window even if the run
        # was stopped meanwhile.
        archived_ids = {m.id for m in window.to_archive}
        self._messages = [m for m in self._messages if m.id not in archived_ids]
        await asyncio.shield(self._conversation.save(self._messages))
        log.info("conversation_archived", chunk_id=chunk.id, archived=len(archived_ids))
        token.raise_if_stale()
        self._set_status(STATUS_GENERATING)

    def _cap(self, text: str, log: structlog.BoundLogger) -> str:
        limit = self._config.coordinator.max_assistant_message_chars
        if len(text) <= limit:
            return text
        log.info("assistant_message_capped", original_chars=len(text), limit=limit)
        return text[:limit]

    async def _finalize(
        self,
        token: RunToken,
        user_message: Message,
        result: ToolLoopResult,
        log: structlog.BoundLogger,
    ) -> None:
        token.raise_if_stale()

        if result.step_log:
            self._messages.append(Message(role="assistant", content=result.step_log))
            self._messages = prune_tool_logs(
                self._messages, self._config.coordinator.max_retained_tool_logs
            )

        text = self._cap(result.text if result.text.strip() else EMPTY_RESPONSE_TEXT, log)
        outputs = self._executor.drain_outputs()
        self._messages.append(
            Message(
                role="assistant",
                content=text,
                downloaded_document_file_names=outputs.downloaded_file_names,
                accessed_project_ids=result.accessed_projects,
            )
        )
        await self._conversation.save(self._messages)

        token.raise_if_stale()
        await self._transport.send_text(text)
        await self._relay_outputs(token, outputs, log)

        self._schedule_descriptions(user_message, outputs.downloaded_file_names)

        token.raise_if_stale()
        self._set_status(STATUS_LISTENING)
        self._event_bus.publish(
            ConciergeEvent.RUN_COMPLETED,
            {
                "run_id": token.run_id,
                "rounds": result.rounds,
                "stop_reason": str(result.stop_reason),
                "spend_usd": result.spend_usd,
            },
        )
        log.info(
            "run_completed",
            rounds=result.rounds,
            stop_reason=str(result.stop_reason),
            spend_usd=result.spend_usd,
        )

    async def _relay_outputs(
        self, token: RunToken, outputs: ToolOutputs, log: structlog.BoundLogger
    ) -> None:
        for image in outputs.generated_images:
            token.raise_if_stale()
            try:
                await self._transport.send_photo(image.data, caption=image_caption(image.prompt))
            except Exception as exc:
                log.warning("generated_image_send_failed", error=str(exc))

        for document in outputs.generated_documents:
            token.raise_if_stale()
            try:
                if document.mime_type.startswith("image/"):
                    await self._transport.send_photo(document.data)
                else:
                    await self._transport.send_document(
                        document.data,
                        file_name=document.filename,
                        mime_type=document.mime_type,
                    )
            except Exception as exc:
                log.warning(
                    "generated_document_send_failed", file_name=document.filename, error=str(exc)
                )

    # ── Post-hoc file descriptions ─────────────────────────────────────────────

    def _schedule_descriptions(self, user_message: Message, downloaded: Sequence[str]) -> None:
        if self._describer is None or self._descriptions is None:
            return
        files = [
            *user_message.image_file_names,
            *user_message.document_file_names,
            *downloaded,
        ]
        if not files:
            return
        self._track_background(
            asyncio.create_task(self._describe_files(files, list(self._messages)))
        )

    def _track_background(self, task: asyncio.Task[None]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _describe_files(self, files: list[str], conversation: list[Message]) -> None:
        if self._describer is None or self._descriptions is None:
            return
        try:
            descriptions = await self._describer.describe(files, conversation)
            await self._descriptions.set_many(descriptions)
            self._logger.info("file_descriptions_saved", count=len(descriptions))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("file_description_failed", files=len(files), error=str(exc))

    # ── Memory management ──────────────────────────────────────────────────────

    async def clear_conversation(self) -> None:
        """Forget the active conversation. The archive is kept."""
        await self.cancel(notify=False)
        self._messages = []
        await self._conversation.save(self._messages)
        self._logger.info("conversation_cleared")

    async def delete_all_memory(self) -> None:
        """Forget the conversation, every archived chunk and all file descriptions."""
        await self.clear_conversation()
        await self._archive.clear()
        if self._descriptions is not None:
            await self._descriptions.clear()
        self._logger.info("memory_deleted")
