import time
from typing import Optional

from .database import Database


class SettingsRepo:
    """Key/value rows for admin-tunable values (commission rate, staking APY)."""

    def __init__(self, db: Database):
        self._db = db

    async def ensure(self, key: str, value: str):
        """Seed a default without overwriting an admin's change."""
        await self._db.execute(
            "INSERT OR IGNORE INTO settings (key, value, updated_by, updated_at) VALUES (?, ?, 'default', ?)",
            (key, value, time.time()),
        )

    async def get(self, key: str) -> Optional[str]:
        async with self._db.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def get_full(self, key: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT key, value, updated_by, updated_at FROM settings WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {"key": row[0], "value": row[1], "updated_by": row[2], "updated_at": row[3]}

    async def set(self, key: str, value: str, updated_by: str = ""):
        await self._db.execute(
            "INSERT INTO settings (key, value, updated_by, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "updated_by = excluded.updated_by, updated_at = excluded.updated_at",
            (key, value, updated_by, time.time()),
        )
