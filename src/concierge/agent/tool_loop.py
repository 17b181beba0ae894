"""Bounded LLM/tool round loop with spend caps and tool gating."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

import structlog

from concierge.agent.protocols import LLMClient, LLMRequest, ToolExecutor
from concierge.agent.spend import SpendLedger, TurnSpend, format_usd
from concierge.agent.steps import accessed_projects, build_step_log, progress_message
from concierge.events.bus import ConciergeEvent, EventBus
from concierge.models.config import SpendConfig, ToolLoopConfig
from concierge.models.settings import CodeCLIProvider
from concierge.models.tools import (
    TextResponse,
    ToolCall,
    ToolCallsResponse,
    ToolDefinition,
    ToolInteraction,
    ToolResult,
)

ProgressFn = Callable[[str], Awaitable[None]]

SUMMARY_FAILURE_TEXT = "I completed the requested actions but had trouble summarizing the results."
EMPTY_RESPONSE_TEXT = "I completed the requested actions."


class StopReason(StrEnum):
    TEXT = "text"
    """The model answered with text."""
    TURN_SPEND_LIMIT = "turn_spend_limit"
    """Per-turn spend reached; a forced no-tools answer was requested."""
    ROUND_LIMIT = "round_limit"
    """Round cap reached; a forced no-tools answer was requested."""
    BUDGET_EXCEEDED = "budget_exceeded"
    """Daily or monthly limit reached; the apology text is returned."""


@dataclass
class ToolLoopResult:
    text: str
    step_log: str | None
    accessed_projects: list[str]
    stop_reason: StopReason
    spend_usd: float = 0.0
    rounds: int = 0
    interactions: list[ToolInteraction] = field(default_factory=list)


def spend_limit_instruction(spent_usd: float, limit_usd: float) -> str:
    return (
        "The tool spend limit for this turn has been reached "
        f"(spent approximately ${format_usd(spent_usd)}, limit ${format_usd(limit_usd)}).\n"
        "Provide the best possible final response to the user using the information you "
        "already have. Do not call additional tools."
    )


ROUND_LIMIT_INSTRUCTION = (
    "You have reached the tool-round safety limit for this turn.\n"
    "Provide the best possible final response to the user using the information you "
    "already have. Do not call additional tools."
)


def time_note(now: datetime) -> str:
    return f"\n\n[System Note: Current time is now {now:%H:%M:%S}]"


def order_results(calls: Sequence[ToolCall], results: Sequence[ToolResult]) -> list[ToolResult]:
    """
    Reorder ``results`` to follow ``calls``.

    Results whose id matches no call are kept, after the ordered ones.
    """
    remaining = list(results)
    ordered: list[ToolResult] = []
    for call in calls:
        for index, result in enumerate(remaining):
            if result.tool_call_id == call.id:
                ordered.append(remaining.pop(index))
                break
    return ordered + remaining


class ToolLoopEngine:
    """
    Drives one turn's alternation of LLM calls and tool execution.

    Each round:

    1. Offer the current tool set (gated tools hidden until the unlock tool
       has run; the unlock tool hidden afterwards).
    2. Bill the round's spend to the turn, today and this month.
    3. Text ends the turn. Tool calls run unless the per-turn limit is
       reached (forces a final no-tools answer) or the daily/monthly limit is
       reached (returns an apology immediately).
    4. Results are reordered to the assistant's call order and stamped with
       the current time.

    If the round cap is reached, a final no-tools answer is forced.

    Example::

        engine = ToolLoopEngine(llm, executor, tools, ledger=ledger)
        result = await engine.run(LLMRequest(messages=window.to_send))
    """

    def __init__(
        self,
        llm: LLMClient,
        executor: ToolExecutor,
        tools: Sequence[ToolDefinition],
        *,
        ledger: SpendLedger,
        config: ToolLoopConfig | None = None,
        spend_config: SpendConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._llm = llm
        self._executor = executor
        self._tools = list(tools)
        self._ledger = ledger
        self._config = config or ToolLoopConfig()
        self._spend_config = spend_config or SpendConfig()
        self._event_bus = event_bus or EventBus()
        self._clock = clock
        self._logger = structlog.get_logger("concierge.agent.tool_loop")

    def tools_for_round(self, unlocked: bool) -> list[ToolDefinition]:
        if unlocked:
            return [t for t in self._tools if t.name != self._config.unlock_tool]
        return [t for t in self._tools if t.name not in self._config.gated_tools]

    def blocked_call_message(self, name: str, unlocked: bool) -> str:
        unlock_tool = self._config.unlock_tool
        if name in self._config.gated_tools and not unlocked:
            return (
                f"Tool '{name}' is currently gated. Call {unlock_tool} first to unlock "
                "deployment/database tools for this turn."
            )
        if name == unlock_tool and unlocked:
            return (
                f"Tool '{unlock_tool}' was already used in this turn and is no longer available. "
                "Continue with the unlocked deployment/database tools."
            )
        return f"Tool '{name}' is not available in this turn."

    def _finish(
        self,
        text: str,
        reason: StopReason,
        spend: TurnSpend,
        rounds: int,
        interactions: list[ToolInteraction],
        logged: list[ToolInteraction],
    ) -> ToolLoopResult:
        return ToolLoopResult(
            text=text if text.strip() else EMPTY_RESPONSE_TEXT,
            step_log=build_step_log(logged),
            accessed_projects=accessed_projects(logged, self._config.project_tools),
            stop_reason=reason,
            spend_usd=spend.cumulative_usd,
            rounds=rounds,
            interactions=interactions,
        )

    async def _bill(self, spend: TurnSpend, amount_usd: float | None) -> None:
        if spend.add(amount_usd):
            await self._ledger.record(amount_usd)

    def _budget_apology(self, spend: TurnSpend) -> str | None:
        message = spend.budget_exceeded_message()
        if message is not None:
            self._event_bus.publish(
                ConciergeEvent.SPEND_LIMIT_REACHED,
                {"scope": spend.exceeded_scope(), "spent_usd": spend.cumulative_usd},
            )
        return message

    async def run(
        self,
        request: LLMRequest,
        *,
        on_progress: ProgressFn | None = None,
        checkpoint: Callable[[], None] | None = None,
        code_cli: CodeCLIProvider = CodeCLIProvider.CLAUDE,
        logger: structlog.BoundLogger | None = None,
    ) -> ToolLoopResult:
        """
        Run the loop for one turn.

        Args:
            request: Base request (conversation window and turn context). Its
                ``tools``, ``prior_interactions`` and unlock flag are managed here.
            on_progress: Receives a short status line before each tool round.
                Failures are logged and ignored.
            checkpoint: Called at every suspension boundary; raises to abort a
                superseded run.
            code_cli: Active coding agent, named in progress text.
            logger: Logger bound with run context.
        """
        log = logger or self._logger
        check = checkpoint or (lambda: None)
        spend = TurnSpend(await self._ledger.snapshot(), self._spend_config)
        interactions: list[ToolInteraction] = []
        # Same rounds without the time note, for the step log.
        logged: list[ToolInteraction] = []
        unlocked = False

        apology = self._budget_apology(spend)
        if apology is not None:
            log.warning("spend_budget_exhausted_before_loop", today_usd=spend.today_usd)
            return self._finish(
                apology, StopReason.BUDGET_EXCEEDED, spend, 0, interactions, logged
            )

        forced_reason = StopReason.ROUND_LIMIT
        rounds = 0
        for round_number in range(1, self._config.max_rounds + 1):
            check()
            rounds = round_number
            tools = self.tools_for_round(unlocked)
            allowed = {t.name for t in tools}
            log.info(
                "tool_round_started",
                round=round_number,
                turn_usd=spend.cumulative_usd,
                today_usd=spend.today_usd,
                month_usd=spend.month_usd,
            )

            response = await self._llm.generate(
                request.model_copy(
                    update={
                        "tools": tools,
                        "prior_interactions": list(interactions),
                        "deployment_tools_unlocked": unlocked,
                        "final_response_instruction": None,
                    }
                )
            )
            check()
            if not isinstance(response, (TextResponse, ToolCallsResponse)):
                raise TypeError(f"Unexpected LLM response type: {type(response).__name__}")
            await self._bill(spend, response.spend_usd)

            if isinstance(response, TextResponse):
                log.info(
                    "tool_loop_text_response",
                    round=round_number,
                    prompt_tokens=response.prompt_tokens,
                )
                return self._finish(
                    response.text, StopReason.TEXT, spend, rounds, interactions, logged
                )

            calls = response.calls
            log.info("tool_calls_requested", round=round_number, tools=[c.name for c in calls])

            if spend.turn_limit_reached:
                forced_reason = StopReason.TURN_SPEND_LIMIT
                self._event_bus.publish(
                    ConciergeEvent.SPEND_LIMIT_REACHED,
                    {"scope": "turn", "spent_usd": spend.cumulative_usd},
                )
                log.warning(
                    "turn_spend_limit_reached",
                    spent_usd=spend.cumulative_usd,
                    limit_usd=self._spend_config.per_turn_limit_usd,
                )
                break

            apology = self._budget_apology(spend)
            if apology is not None:
                log.warning("spend_budget_exhausted_during_loop", round=round_number)
                return self._finish(
                    apology, StopReason.BUDGET_EXCEEDED, spend, rounds, interactions, logged
                )

            executable = [c for c in calls if c.name in allowed]
            blocked = [c for c in calls if c.name not in allowed]
            if blocked:
                log.warning("tool_calls_blocked", tools=[c.name for c in blocked])

            if on_progress is not None and executable:
                try:
                    await on_progress(progress_message((c.name for c in executable), code_cli))
                except Exception as exc:
                    log.warning("progress_send_failed", error=str(exc))

            results: list[ToolResult] = []
            if executable:
                results.extend(await self._executor.execute_parallel(executable))
            results.extend(
                ToolResult.error(c.id, self.blocked_call_message(c.name, unlocked))
                for c in blocked
            )
            check()

            ordered = order_results(response.assistant_message.tool_calls, results)
            if len(ordered) > len(calls):
                log.warning("tool_results_unmatched", count=len(ordered) - len(calls))
            note = time_note(self._clock())
            stamped = [r.model_copy(update={"content": r.content + note}) for r in ordered]

            if any(c.name == self._config.unlock_tool for c in executable):
                unlocked = True

            interactions.append(
                ToolInteraction(assistant_message=response.assistant_message, results=stamped)
            )
            logged.append(
                ToolInteraction(assistant_message=response.assistant_message, results=ordered)
            )
        else:
            log.warning("tool_round_limit_reached", max_rounds=self._config.max_rounds)

        if forced_reason is StopReason.TURN_SPEND_LIMIT:
            instruction = spend_limit_instruction(
                spend.cumulative_usd, self._spend_config.per_turn_limit_usd
            )
        else:
            instruction = ROUND_LIMIT_INSTRUCTION

        check()
        final = await self._llm.generate(
            request.model_copy(
                update={
                    "tools": None,
                    "prior_interactions": list(interactions),
                    "deployment_tools_unlocked": unlocked,
                    "final_response_instruction": instruction,
                }
            )
        )
        check()
        # Billed without a fresh limit check: it is the last call of the turn.
        await self._bill(spend, final.spend_usd)

        text = final.text if isinstance(final, TextResponse) else SUMMARY_FAILURE_TEXT
        return self._finish(text, forced_reason, spend, rounds, interactions, logged)
