"""Key/value persistence for JSON records, with SQLite and plain-file backends."""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
import structlog
from pydantic import BaseModel, ValidationError

from concierge.ids import now_ms
from concierge.models.config import StoreConfig
from concierge.store.pool import StorePool, database_path, open_connection

M = TypeVar("M", bound=BaseModel)

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ConciergeStoreError(Exception):
    """Base class for store errors."""


class StoreNotInitializedError(ConciergeStoreError):
    """Raised when a store is used before ``initialize()``."""


class CorruptRecordError(ConciergeStoreError):
    """Raised when a stored record cannot be decoded."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Corrupt record {key!r}: {reason}")
        self.key = key
        self.reason = reason


class InvalidRecordKeyError(ConciergeStoreError):
    """Raised for keys that would escape the store's namespace."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Invalid record key: {key!r}")
        self.key = key


def _validate_key(key: str) -> str:
    parts = key.split("/")
    if not key or any(p in ("", ".", "..") for p in parts):
        raise InvalidRecordKeyError(key)
    return key


# ── Base ───────────────────────────────────────────────────────────────────────


class RecordStore(ABC):
    """
    Durable key/value store of JSON documents.

    Backends implement the text primitives; JSON and pydantic helpers are
    shared. Keys are ``/``-separated, e.g. ``conversation`` or ``chunks/<id>``.
    A ``put`` is atomic per key: readers see either the old or the new value.
    """

    def __init__(self) -> None:
        self._logger = structlog.get_logger("concierge.store")

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get_text(self, key: str) -> str | None:
        """Return the raw stored text, or ``None`` when the key is absent."""

    @abstractmethod
    async def put_text(self, key: str, text: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. No-op when absent."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with ``prefix``."""

    async def exists(self, key: str) -> bool:
        return await self.get_text(key) is not None

    async def get_json(self, key: str) -> Any | None:
        """
        Decode a JSON record.

        Raises:
            CorruptRecordError: If the stored text is not valid JSON.
        """
        text = await self.get_text(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptRecordError(key, str(exc)) from exc

    async def put_json(self, key: str, value: Any) -> None:
        await self.put_text(key, json.dumps(value, ensure_ascii=False))

    async def load_model(self, key: str, model: type[M], default: M) -> M:
        """
        Load a pydantic record, falling back to ``default`` when missing or corrupt.

        Corrupt records are logged as ``record_corrupt`` and left in place so
        they can be inspected; the next save overwrites them.
        """
        try:
            data = await self.get_json(key)
            if data is None:
                return default
            return model.model_validate(data)
        except (CorruptRecordError, ValidationError) as exc:
            self._logger.error("record_corrupt", key=key, error=str(exc))
            return default

    async def save_model(self, key: str, value: BaseModel) -> None:
        await self.put_text(key, value.model_dump_json())


# ── SQLite backend ─────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  INTEGER NOT NULL
);
"""


class SQLiteRecordStore(RecordStore):
    """
    Records stored as rows of a single SQLite table.

    Connection lifecycle follows :class:`~concierge.store.pool.StorePool`:
    with a pool, the connection is shared and ``close()`` is a no-op; without
    one, a private connection is opened and ``close()`` releases it.

    Usage::

        pool = StorePool()
        store = SQLiteRecordStore(config.store, pool=pool)
        await store.initialize()
        await store.put_json("settings", {"code_cli_provider": "claude"})
        await pool.close_all()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        super().__init__()
        self._config = config
        self._db_path = database_path(config)
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._private_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """
        Open (or borrow) the connection and apply the schema idempotently.

        Raises:
            aiosqlite.Error: If the database cannot be opened.
        """
        if self._conn is not None:
            return
        if self._pool is not None:
            conn = await self._pool.acquire(self._config)
        else:
            conn = await open_connection(self._db_path, self._config)

        await conn.executescript(_SCHEMA)
        await conn.commit()
        self._conn = conn

    async def close(self) -> None:
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreNotInitializedError("Store is not initialized. Call initialize() first.")
        return self._conn

    def _write_lock(self) -> asyncio.Lock:
        if self._pool is not None:
            return self._pool.write_lock(self._config)
        return self._private_lock

    async def get_text(self, key: str) -> str | None:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT value FROM records WHERE key = ?", (_validate_key(key),)
        ) as cursor:
            row = await cursor.fetchone()
        return None if row is None else row[0]

    async def put_text(self, key: str, text: str) -> None:
        conn = self._conn_or_raise()
        async with self._write_lock():
            await conn.execute(
                """
                INSERT INTO records (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (_validate_key(key), text, now_ms()),
            )
            await conn.commit()

    async def delete(self, key: str) -> None:
        conn = self._conn_or_raise()
        async with self._write_lock():
            await conn.execute("DELETE FROM records WHERE key = ?", (_validate_key(key),))
            await conn.commit()

    async def keys(self, prefix: str = "") -> list[str]:
        conn = self._conn_or_raise()
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with conn.execute(
            "SELECT key FROM records WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (escaped + "%",),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]


# ── File backend ───────────────────────────────────────────────────────────────


class FileRecordStore(RecordStore):
    """
    One JSON file per record under a data directory.

    ``chunks/<id>`` lives at ``<root>/chunks/<id>.json``. Writes go to a
    temporary sibling and are moved into place with ``os.replace``.
    """

    def __init__(self, config: StoreConfig) -> None:
        super().__init__()
        self._root = Path(config.path).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / f"{_validate_key(key)}.json"

    async def initialize(self) -> None:
        await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        return None

    async def get_text(self, key: str) -> str | None:
        path = self._path(key)

        def _read() -> str | None:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        try:
            return await asyncio.to_thread(_read)
        except UnicodeDecodeError as exc:
            raise CorruptRecordError(key, f"not valid UTF-8: {exc}") from exc

    async def put_text(self, key: str, text: str) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)

        await asyncio.to_thread(_write)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def keys(self, prefix: str = "") -> list[str]:
        def _scan() -> list[str]:
            if not self._root.exists():
                return []
            found = []
            for path in self._root.rglob("*.json"):
                key = path.relative_to(self._root).as_posix()[: -len(".json")]
                if key.startswith(prefix):
                    found.append(key)
            return sorted(found)

        return await asyncio.to_thread(_scan)


def open_record_store(config: StoreConfig, pool: StorePool | None = None) -> RecordStore:
    """Build the backend selected by ``config.backend`` (not yet initialized)."""
    if config.backend == "files":
        return FileRecordStore(config)
    return SQLiteRecordStore(config, pool=pool)
