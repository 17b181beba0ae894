"""Tiered conversation archive."""

from concierge.archive.store import (
    ArchiveError,
    ArchiveStore,
    ChunkContentMissingError,
    ChunkNotFoundError,
    EmptyBatchError,
)
from concierge.archive.summarizer import (
    CompletionFn,
    Summarizer,
    extract_first_json_object,
    make_completion_fn,
)

__all__ = [
    "ArchiveError",
    "ArchiveStore",
    "ChunkContentMissingError",
    "ChunkNotFoundError",
    "CompletionFn",
    "EmptyBatchError",
    "Summarizer",
    "extract_first_json_object",
    "make_completion_fn",
]
