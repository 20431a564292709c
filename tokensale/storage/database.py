"""
database.py - Shared connection with serialized write transactions.

All writers go through Database.transaction(): an asyncio lock serializes
coroutines sharing the connection and BEGIN IMMEDIATE takes SQLite's write
lock, which serializes other processes on the same file. A task that
already owns the transaction joins it instead of opening a second one, so
composite commands commit or roll back as a unit.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

import aiosqlite

logger = logging.getLogger("storage")


class Database:
    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._after_commit: List[Callable[[], None]] = []

    def execute(self, sql: str, params: tuple = ()):
        return self.conn.execute(sql, params)

    def in_transaction(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self):
        if self.in_transaction():
            yield self
            return

        async with self._lock:
            callbacks: List[Callable[[], None]] = []
            self._owner = asyncio.current_task()
            self._after_commit = callbacks
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self
                except BaseException:
                    await self.conn.rollback()
                    raise
                await self.conn.commit()
            finally:
                self._owner = None
                self._after_commit = []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("after-commit callback failed")

    @asynccontextmanager
    async def read(self):
        """Wait out any in-flight transaction so reads see committed state only.

        Must not wrap writes: it does not open a transaction.
        """
        if self.in_transaction():
            yield self
            return
        async with self._lock:
            yield self

    def after_commit(self, callback: Callable[[], None]):
        """Run callback once the enclosing transaction commits; dropped on rollback."""
        if self.in_transaction():
            self._after_commit.append(callback)
        else:
            callback()

    async def close(self):
        await self.conn.close()
