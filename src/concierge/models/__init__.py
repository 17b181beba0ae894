"""Concierge data models."""

from concierge.models.chunk import (
    Chunk,
    ChunkIdentification,
    ChunkIndex,
    PendingChunk,
    PendingChunkIndex,
    SummarizationContext,
    SummaryExtraction,
)
from concierge.models.config import (
    ArchiveConfig,
    ConciergeConfig,
    CoordinatorConfig,
    PersonaConfig,
    RetryConfig,
    SpendConfig,
    StoreConfig,
    ToolLoopConfig,
)
from concierge.models.message import Message
from concierge.models.settings import CodeCLIProvider, Settings, TranscriptionProvider
from concierge.models.tools import (
    AssistantToolCallMessage,
    FileAttachment,
    GeneratedImage,
    LLMResponse,
    TextResponse,
    ToolCall,
    ToolCallsResponse,
    ToolDefinition,
    ToolInteraction,
    ToolOutputs,
    ToolResult,
)

__all__ = [
    # Config
    "ArchiveConfig",
    "ConciergeConfig",
    "CoordinatorConfig",
    "PersonaConfig",
    "RetryConfig",
    "SpendConfig",
    "StoreConfig",
    "ToolLoopConfig",
    # Conversation
    "Message",
    # Archive
    "Chunk",
    "ChunkIdentification",
    "ChunkIndex",
    "PendingChunk",
    "PendingChunkIndex",
    "SummarizationContext",
    "SummaryExtraction",
    # Settings
    "CodeCLIProvider",
    "Settings",
    "TranscriptionProvider",
    # Tools
    "AssistantToolCallMessage",
    "FileAttachment",
    "GeneratedImage",
    "LLMResponse",
    "TextResponse",
    "ToolCall",
    "ToolCallsResponse",
    "ToolDefinition",
    "ToolInteraction",
    "ToolOutputs",
    "ToolResult",
]
