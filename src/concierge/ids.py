"""Sortable identifiers and clock helpers."""

from __future__ import annotations

import time

from ulid import ULID


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"chunk"``, ``"run"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)
