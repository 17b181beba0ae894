"""Configuration models for the concierge core and its components."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ArchiveConfig(BaseModel):
    """Configuration for the active window and the tiered archive."""

    chunk_size: int = Field(
        default=10_000,
        ge=5_000,
        description=(
            "Estimated tokens per temporary chunk. The active window is kept between "
            "chunk_size and 2 * chunk_size."
        ),
    )

    chunks_to_consolidate: int = Field(
        default=4,
        ge=2,
        description="Number of oldest temporary chunks merged into one consolidated chunk.",
    )

    consolidation_trigger: int = Field(
        default=6,
        ge=2,
        description="Temporary chunk count at which consolidation runs.",
    )

    recent_consolidated_count: int = Field(
        default=5,
        ge=0,
        description="Consolidated chunks whose summaries are injected on every turn.",
    )

    summary_max_tokens: int = 2_000
    """Output budget for a single summarization call."""

    summary_input_chars: int = 100_000
    """Conversation text beyond this many characters is cut before summarization."""

    summary_fallback_chars: int = 6_000
    """Raw model output kept as the summary when the JSON reply cannot be parsed."""

    summarization_model: str = "openrouter/google/gemini-3-flash-preview"
    """litellm model string used by the default completion function."""

    @property
    def min_context_tokens(self) -> int:
        return self.chunk_size

    @property
    def max_context_tokens(self) -> int:
        return self.chunk_size * 2

    @model_validator(mode="after")
    def validate_consolidation(self) -> ArchiveConfig:
        if self.chunks_to_consolidate > self.consolidation_trigger:
            raise ValueError("chunks_to_consolidate must not exceed consolidation_trigger")
        return self


class RetryConfig(BaseModel):
    """Capped exponential backoff used by archive summarization."""

    base_delay: float = Field(default=2.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)
    max_attempts: int | None = Field(
        default=None,
        ge=1,
        description="None retries forever. Losing a summary is worse than a slow turn.",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> RetryConfig:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must not exceed max_delay")
        return self


MINIMUM_SPEND_LIMIT_USD = 0.001


class SpendConfig(BaseModel):
    """USD ceilings on LLM/tool usage."""

    per_turn_limit_usd: float = Field(default=0.20, ge=MINIMUM_SPEND_LIMIT_USD)
    daily_limit_usd: float | None = Field(default=None, ge=MINIMUM_SPEND_LIMIT_USD)
    monthly_limit_usd: float | None = Field(default=None, ge=MINIMUM_SPEND_LIMIT_USD)

    ledger_retention_days: int = Field(default=500, ge=31)
    """Per-day ledger entries older than this are pruned."""


class ToolLoopConfig(BaseModel):
    """Configuration for the bounded LLM/tool round loop."""

    max_rounds: int = Field(
        default=120,
        ge=1,
        description="Safety cap on LLM/tool rounds within a single turn.",
    )

    unlock_tool: str | None = "show_project_deployment_tools"
    """Calling this tool unlocks the gated tools for the rest of the turn."""

    gated_tools: frozenset[str] = frozenset(
        {
            "deploy_project_to_vercel",
            "provision_project_database",
            "push_project_database_schema",
            "sync_project_database_env_to_vercel",
            "generate_project_mcp_config",
        }
    )

    project_tools: frozenset[str] = frozenset(
        {
            "create_project",
            "browse_project",
            "read_project_file",
            "add_project_files",
            "run_claude_code",
            "send_project_result",
        }
    )
    """Tools whose arguments name the project they touch."""

    @model_validator(mode="after")
    def validate_unlock_tool(self) -> ToolLoopConfig:
        if self.unlock_tool is not None and self.unlock_tool in self.gated_tools:
            raise ValueError("unlock_tool cannot itself be gated")
        return self


class CoordinatorConfig(BaseModel):
    """Configuration for turn admission and finalization."""

    max_assistant_message_chars: int = Field(default=4_000, ge=100)
    max_retained_tool_logs: int = Field(default=5, ge=0)
    trigger_wait_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between checks while a reminder/mail trigger waits for the active run.",
    )
    summary_tail_messages: int = 10
    """Live messages passed to the summarizer as the current conversation tail."""
    summary_tail_chars: int = 500


class PersonaConfig(BaseModel):
    """Identity hints passed to the summarizer."""

    persona_context: str | None = None
    assistant_name: str | None = None
    user_name: str | None = None


class StoreConfig(BaseModel):
    """Configuration for the record persistence layer."""

    backend: Literal["sqlite", "files"] = "sqlite"

    path: str = Field(
        default="~/.concierge",
        description="Data directory. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode (sqlite backend only)."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class ConciergeConfig(BaseModel):
    """
    Top-level configuration for the concierge core.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = ConciergeConfig(
            archive=ArchiveConfig(chunk_size=25_000),
            spend=SpendConfig(per_turn_limit_usd=0.5, daily_limit_usd=5.0),
        )
    """

    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    spend: SpendConfig = Field(default_factory=SpendConfig)
    tool_loop: ToolLoopConfig = Field(default_factory=ToolLoopConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    persona: PersonaConfig = Field(default_factory=PersonaConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @classmethod
    def default(cls) -> ConciergeConfig:
        """Return a config instance with all defaults."""
        return cls()
