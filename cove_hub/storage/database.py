"""
Database connection management for the hub.

Uses aiosqlite for async access to the embedded sqlite store.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from .config import StorageConfig
from .exceptions import DatabaseOperationError, DatabaseUnavailableError

logger = logging.getLogger("cove.hub.storage.database")


class Database:
    """
    Owns the single aiosqlite connection of the hub.

    Provides:
    - Lazy initialization with schema check
    - Short write transactions serialized on the connection
    - Graceful shutdown
    """

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._config.path

    @property
    def is_initialized(self) -> bool:
        """Check if the connection is open."""
        return self._conn is not None

    async def initialize(self) -> None:
        """
        Open the database file and verify its schema.

        Raises:
            DatabaseUnavailableError: the file cannot be opened
            SchemaMismatch: the store was written by an incompatible schema
        """
        if self._conn is not None:
            logger.debug("Database already initialized")
            return

        from .migrations import ensure_schema

        logger.info("Opening database %s", self.path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self.path), timeout=self._config.timeout)
        except (OSError, aiosqlite.Error) as e:
            logger.error("Failed to open database %s: %s", self.path, e)
            raise DatabaseUnavailableError("open", e) from e

        conn.row_factory = aiosqlite.Row
        self._conn = conn
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            if self._config.wal:
                await conn.execute("PRAGMA journal_mode = WAL")
            await ensure_schema(self, auto_migrate=self._config.auto_migrate)
        except aiosqlite.Error as e:
            await self.close()
            # A file that is not a database at all
            raise DatabaseUnavailableError("open", e) from e
        except Exception:
            await self.close()
            raise

        logger.info("Database ready at %s", self.path)

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            logger.info("Closing database")
            conn, self._conn = self._conn, None
            await conn.close()

    def _require(self, operation: str) -> aiosqlite.Connection:
        if self._conn is None:
            raise DatabaseUnavailableError(operation)
        return self._conn

    async def execute(self, query: str, *args: Any) -> None:
        """Execute a single write statement in its own transaction."""
        async with self.transaction() as conn:
            await conn.execute(query, args)

    async def executescript(self, script: str) -> None:
        conn = self._require("executescript")
        async with self._write_lock:
            try:
                await conn.executescript(script)
            except aiosqlite.Error as e:
                raise DatabaseOperationError("executescript", e) from e

    async def fetch(self, query: str, *args: Any) -> list[aiosqlite.Row]:
        """Execute a query and return all rows."""
        conn = self._require("fetch")
        try:
            async with conn.execute(query, args) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise DatabaseOperationError("fetch", e) from e

    async def fetchrow(self, query: str, *args: Any) -> Optional[aiosqlite.Row]:
        """Execute a query and return a single row."""
        conn = self._require("fetchrow")
        try:
            async with conn.execute(query, args) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseOperationError("fetchrow", e) from e

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return the first column of the first row."""
        row = await self.fetchrow(query, *args)
        return row[0] if row is not None else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run statements in one transaction.

        Usage:
            async with db.transaction() as conn:
                await conn.execute("INSERT INTO ...")
                await conn.execute("UPDATE ...")
                # Commits on success, rolls back on exception

        Yields:
            aiosqlite.Connection with an open transaction
        """
        conn = self._require("transaction")
        async with self._write_lock:
            try:
                await conn.execute("BEGIN")
                yield conn
            except BaseException as e:
                await conn.rollback()
                if isinstance(e, aiosqlite.Error):
                    raise DatabaseOperationError("transaction", e) from e
                raise
            else:
                try:
                    await conn.commit()
                except aiosqlite.Error as e:
                    await conn.rollback()
                    raise DatabaseOperationError("commit", e) from e

    async def checkpoint(self) -> None:
        """Flush the write-ahead log into the main database file."""
        conn = self._require("checkpoint")
        if not self._config.wal:
            return
        async with self._write_lock:
            try:
                await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except aiosqlite.Error as e:
                raise DatabaseOperationError("checkpoint", e) from e
