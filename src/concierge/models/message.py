"""Conversation message model."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from concierge.ids import make_id, now_ms

# Older records stored one attachment per kind under a singular key.
_LEGACY_SINGLE_FIELDS: dict[str, str] = {
    "image_file_name": "image_file_names",
    "document_file_name": "document_file_names",
    "image_file_size": "image_file_sizes",
    "document_file_size": "document_file_sizes",
    "referenced_image_file_name": "referenced_image_file_names",
    "referenced_document_file_name": "referenced_document_file_names",
    "referenced_image_file_size": "referenced_image_file_sizes",
    "referenced_document_file_size": "referenced_document_file_sizes",
}


class Message(BaseModel):
    """
    A single conversation message.

    Attachments are referenced by stable filename; file bytes are never
    embedded in the persisted record. Messages are not mutated after they are
    appended to the conversation; they are only removed when archived.
    """

    id: str = Field(default_factory=lambda: make_id("msg"))
    role: Literal["user", "assistant"]
    content: str
    timestamp: int = Field(default_factory=now_ms)
    """Unix millisecond timestamp."""

    # Primary attachments
    image_file_names: list[str] = Field(default_factory=list)
    image_file_sizes: list[int] = Field(default_factory=list)
    document_file_names: list[str] = Field(default_factory=list)
    document_file_sizes: list[int] = Field(default_factory=list)

    # Attachments pulled from the message being replied to
    referenced_image_file_names: list[str] = Field(default_factory=list)
    referenced_image_file_sizes: list[int] = Field(default_factory=list)
    referenced_document_file_names: list[str] = Field(default_factory=list)
    referenced_document_file_sizes: list[int] = Field(default_factory=list)

    # Files produced by tools (email attachments, URL downloads)
    downloaded_document_file_names: list[str] = Field(default_factory=list)

    accessed_project_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        upgraded = dict(data)
        for legacy_key, list_key in _LEGACY_SINGLE_FIELDS.items():
            value = upgraded.pop(legacy_key, None)
            if value is not None and not upgraded.get(list_key):
                upgraded[list_key] = [value]
        return upgraded

    def speaker(self) -> str:
        return "User" if self.role == "user" else "Assistant"
