"""
Concierge: conversation core for a single-chat assistant.

Primary entry point::

    from concierge import TurnCoordinator, UserMessageTrigger, Message

    await coordinator.start()
    await coordinator.submit(UserMessageTrigger(message=Message(role="user", content="Hi")))
"""

from concierge.agent import (
    ChatTransport,
    ContextProvider,
    FileDescriber,
    LLMClient,
    LLMRequest,
    SpendLedger,
    StopReason,
    ToolExecutor,
    ToolLoopEngine,
    ToolLoopResult,
)
from concierge.archive import ArchiveStore, Summarizer, make_completion_fn
from concierge.coordinator import (
    ConfigurationError,
    IncomingEmail,
    MailTrigger,
    ReminderTrigger,
    RunSupersededError,
    RunToken,
    TurnCoordinator,
    UserMessageTrigger,
)
from concierge.events.bus import ConciergeEvent, EventBus
from concierge.ids import make_id
from concierge.models import (
    ArchiveConfig,
    Chunk,
    ConciergeConfig,
    Message,
    SummarizationContext,
    ToolCall,
    ToolDefinition,
    ToolResult,
)
from concierge.retry import RetryPolicy
from concierge.store import ConversationStore, RecordStore, open_record_store
from concierge.tokens.estimator import ContextWindow, TokenEstimator, split_window

__version__ = "0.1.0"

__all__ = [
    # Core
    "TurnCoordinator",
    "RunToken",
    "make_id",
    # Triggers
    "UserMessageTrigger",
    "ReminderTrigger",
    "MailTrigger",
    "IncomingEmail",
    # Errors
    "ConfigurationError",
    "RunSupersededError",
    # Config
    "ConciergeConfig",
    "ArchiveConfig",
    # Models
    "Message",
    "Chunk",
    "SummarizationContext",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    # Archive
    "ArchiveStore",
    "Summarizer",
    "make_completion_fn",
    # Agent
    "ToolLoopEngine",
    "ToolLoopResult",
    "StopReason",
    "SpendLedger",
    "LLMClient",
    "LLMRequest",
    "ToolExecutor",
    "ChatTransport",
    "ContextProvider",
    "FileDescriber",
    # Storage
    "RecordStore",
    "ConversationStore",
    "open_record_store",
    "RetryPolicy",
    # Events
    "EventBus",
    "ConciergeEvent",
    # Tokens
    "TokenEstimator",
    "ContextWindow",
    "split_window",
]
