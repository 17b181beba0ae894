"""Approximate token costing for conversation messages and window splitting.

The heuristic is deliberately model-agnostic: roughly four characters per
token for text, plus small fixed costs for attachments. Only the current
turn's attachments are sent inline; historical messages carry a filename and
description hint, so their attachments are cheap.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import PurePath

from concierge.models.message import Message

VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "avi", "mkv", "webm", "m4v", "wmv", "flv", "3gp"})
AUDIO_EXTENSIONS = frozenset({"mp3", "m4a", "wav", "flac", "aac", "opus", "wma", "aiff"})
# Voice notes are transcribed out-of-band and cost nothing.
VOICE_EXTENSIONS = frozenset({"ogg", "oga"})

ATTACHMENT_HINT_TOKENS = 50
UNSIZED_IMAGE_TOKENS = 250
UNSIZED_AUDIO_TOKENS = 200
UNSIZED_DOCUMENT_TOKENS = 500


def _extension(file_name: str) -> str:
    return PurePath(file_name).suffix.lstrip(".").lower()


def is_voice_message(file_name: str) -> bool:
    return _extension(file_name) in VOICE_EXTENSIONS


def is_video_file(file_name: str) -> bool:
    return _extension(file_name) in VIDEO_EXTENSIONS


def is_audio_file(file_name: str) -> bool:
    return _extension(file_name) in AUDIO_EXTENSIONS


@dataclass(frozen=True)
class ContextWindow:
    """Result of splitting the active conversation into send/archive parts."""

    to_send: list[Message]
    to_archive: list[Message]
    needs_archiving: bool
    send_tokens: int = 0
    archive_tokens: int = 0
    total_tokens: int = field(default=0)


class TokenEstimator:
    """
    Heuristic message costing.

    - Text: ``len(content) // 4``.
    - Images and documents: a 50-token hint each; voice notes are free.
    - Referenced attachments: the same hint when the size is known, otherwise
      a fixed fallback by media kind.
    - Every message costs at least 1.
    """

    def estimate(self, text: str) -> int:
        """Estimate the token count of plain text (4 characters per token)."""
        return len(text) // 4

    def estimate_document(self, file_name: str) -> int:
        if is_voice_message(file_name):
            return 0
        return ATTACHMENT_HINT_TOKENS

    def estimate_image(self) -> int:
        return ATTACHMENT_HINT_TOKENS

    def estimate_message(self, message: Message) -> int:
        """
        Estimate the historical-context cost of one message.

        Args:
            message: The message to cost.

        Returns:
            Estimated token count, always >= 1.
        """
        tokens = self.estimate(message.content)

        tokens += self.estimate_image() * len(message.image_file_names)
        for file_name in message.document_file_names:
            tokens += self.estimate_document(file_name)

        for index, _ in enumerate(message.referenced_image_file_names):
            if index < len(message.referenced_image_file_sizes):
                tokens += self.estimate_image()
            else:
                tokens += UNSIZED_IMAGE_TOKENS

        for index, file_name in enumerate(message.referenced_document_file_names):
            if index < len(message.referenced_document_file_sizes):
                tokens += self.estimate_document(file_name)
            elif is_video_file(file_name) or is_voice_message(file_name):
                continue
            elif is_audio_file(file_name):
                tokens += UNSIZED_AUDIO_TOKENS
            else:
                tokens += UNSIZED_DOCUMENT_TOKENS

        return max(tokens, 1)

    def estimate_messages(self, messages: Sequence[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


def split_window(
    messages: Sequence[Message],
    chunk_size: int,
    estimator: TokenEstimator | None = None,
) -> ContextWindow:
    """
    Decide which oldest messages must leave the active window.

    With ``min = chunk_size`` and ``max = 2 * chunk_size``: when the total
    estimated cost fits within ``max`` everything is sent. Otherwise messages
    are taken from the oldest end until adding the next one would exceed
    ``min``; those are archived and the rest are sent. At least one message
    is always archived once the threshold is crossed.

    Pure function: performs no I/O and never mutates ``messages``.

    Args:
        messages: Active conversation, oldest first.
        chunk_size: Configured chunk size in estimated tokens.
        estimator: Optional estimator override.

    Returns:
        A :class:`ContextWindow`. ``to_archive + to_send == messages``.
    """
    est = estimator or TokenEstimator()
    costs = [est.estimate_message(m) for m in messages]
    total = sum(costs)
    min_tokens = chunk_size
    max_tokens = chunk_size * 2

    if total <= max_tokens:
        return ContextWindow(
            to_send=list(messages),
            to_archive=[],
            needs_archiving=False,
            send_tokens=total,
            archive_tokens=0,
            total_tokens=total,
        )

    archive_tokens = 0
    split_index = 0
    for index, cost in enumerate(costs):
        if archive_tokens + cost > min_tokens:
            split_index = index
            break
        archive_tokens += cost

    if split_index == 0 and messages:
        split_index = 1
        archive_tokens = costs[0]

    return ContextWindow(
        to_send=list(messages[split_index:]),
        to_archive=list(messages[:split_index]),
        needs_archiving=True,
        send_tokens=total - archive_tokens,
        archive_tokens=archive_tokens,
        total_tokens=total,
    )
