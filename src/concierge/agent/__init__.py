"""Agent loop: LLM/tool rounds, spend accounting and collaborator protocols."""

from concierge.agent.protocols import (
    ChatTransport,
    ContextProvider,
    FileDescriber,
    LLMClient,
    LLMRequest,
    ToolExecutor,
)
from concierge.agent.spend import (
    SpendLedger,
    SpendSnapshot,
    TurnSpend,
    format_usd,
    spend_limit_message,
)
from concierge.agent.steps import accessed_projects, build_step_log, progress_message
from concierge.agent.tool_loop import (
    EMPTY_RESPONSE_TEXT,
    StopReason,
    ToolLoopEngine,
    ToolLoopResult,
)

__all__ = [
    "EMPTY_RESPONSE_TEXT",
    "ChatTransport",
    "ContextProvider",
    "FileDescriber",
    "LLMClient",
    "LLMRequest",
    "SpendLedger",
    "SpendSnapshot",
    "StopReason",
    "ToolExecutor",
    "ToolLoopEngine",
    "ToolLoopResult",
    "TurnSpend",
    "accessed_projects",
    "build_step_log",
    "format_usd",
    "progress_message",
    "spend_limit_message",
]
