"""User-switchable runtime settings persisted alongside the conversation."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class CodeCLIProvider(StrEnum):
    """Coding agent used for delegated project runs."""

    CLAUDE = "claude"
    GEMINI = "gemini"
    CODEX = "codex"

    @property
    def display_name(self) -> str:
        return {
            CodeCLIProvider.CLAUDE: "Claude Code",
            CodeCLIProvider.GEMINI: "Gemini CLI",
            CodeCLIProvider.CODEX: "Codex CLI",
        }[self]


class TranscriptionProvider(StrEnum):
    """Speech-to-text backend for voice notes."""

    LOCAL = "local"
    OPENAI = "openai"

    @property
    def display_name(self) -> str:
        return {
            TranscriptionProvider.LOCAL: "local transcription",
            TranscriptionProvider.OPENAI: "OpenAI transcription",
        }[self]


class Settings(BaseModel):
    code_cli_provider: CodeCLIProvider = CodeCLIProvider.CLAUDE
    transcription_provider: TranscriptionProvider = TranscriptionProvider.LOCAL
