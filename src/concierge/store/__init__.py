"""Persistence layer: JSON record backends and typed accessors."""

from concierge.store.conversation import (
    ConversationStore,
    FileDescriptionStore,
    SettingsStore,
    prune_tool_logs,
)
from concierge.store.pool import StorePool
from concierge.store.records import (
    ConciergeStoreError,
    CorruptRecordError,
    FileRecordStore,
    InvalidRecordKeyError,
    RecordStore,
    SQLiteRecordStore,
    StoreNotInitializedError,
    open_record_store,
)

__all__ = [
    "ConciergeStoreError",
    "ConversationStore",
    "CorruptRecordError",
    "FileDescriptionStore",
    "FileRecordStore",
    "InvalidRecordKeyError",
    "RecordStore",
    "SQLiteRecordStore",
    "SettingsStore",
    "StoreNotInitializedError",
    "StorePool",
    "open_record_store",
    "prune_tool_logs",
]
