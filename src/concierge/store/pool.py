"""
Shared SQLite connections for record stores.

Every ``SQLiteRecordStore`` built from the same :class:`StoreConfig` resolves
to one ``concierge.db`` file. Through a ``StorePool`` they also share one
``aiosqlite.Connection`` and one write lock, so the conversation, the archive
index and the spend ledger never contend for SQLite's single writer.

Usage::

    pool = StorePool()
    conversation = SQLiteRecordStore(config.store, pool=pool)
    ledger_records = SQLiteRecordStore(config.store, pool=pool)   # same connection
    ...
    await pool.close_all()
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

from concierge.models.config import StoreConfig

DATABASE_FILE = "concierge.db"

_logger = structlog.get_logger("concierge.store.pool")


def database_path(config: StoreConfig) -> str:
    """Absolute path of the records database inside the configured data directory."""
    return str((Path(config.path).expanduser() / DATABASE_FILE).resolve())


async def open_connection(db_path: str, config: StoreConfig) -> aiosqlite.Connection:
    """
    Open a connection with the store's pragmas applied.

    The parent directory is created when missing. The connection is closed
    again if a pragma fails.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=config.connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    One connection and one write lock per records database.

    Bound to the event loop it is first used on.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._opening = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    async def acquire(self, config: StoreConfig) -> aiosqlite.Connection:
        """Return the shared connection for ``config``'s database, opening it on first use."""
        db_path = database_path(config)
        conn = self._connections.get(db_path)
        if conn is not None:
            return conn
        async with self._opening:
            conn = self._connections.get(db_path)
            if conn is None:
                conn = await open_connection(db_path, config)
                self._connections[db_path] = conn
                self._write_locks[db_path] = asyncio.Lock()
                _logger.debug("pool_connection_opened", db_path=db_path)
        return conn

    def write_lock(self, config: StoreConfig) -> asyncio.Lock:
        """
        Lock serialising writes to ``config``'s database.

        Raises:
            KeyError: If :meth:`acquire` was never called for this database.
        """
        return self._write_locks[database_path(config)]

    async def close_all(self) -> None:
        """Close every pooled connection."""
        while self._connections:
            db_path, conn = self._connections.popitem()
            self._write_locks.pop(db_path, None)
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=db_path)
