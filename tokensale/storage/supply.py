import time
from typing import Optional

from tokensale.units import from_micro

from .database import Database


class SupplyRepo:
    """The single supply_counter row (id = 1)."""

    def __init__(self, db: Database):
        self._db = db

    async def ensure(self, cap: int):
        await self._db.execute(
            "INSERT OR IGNORE INTO supply_counter (id, total_supply_cap, tokens_issued, updated_at) "
            "VALUES (1, ?, 0, ?)",
            (cap, time.time()),
        )

    async def get(self) -> Optional[dict]:
        async with self._db.execute(
            "SELECT total_supply_cap, tokens_issued, updated_at FROM supply_counter WHERE id = 1"
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "total_supply_cap": from_micro(row[0]),
            "tokens_issued": from_micro(row[1]),
            "tokens_available": from_micro(row[0] - row[1]),
            "updated_at": row[2],
        }

    async def remaining_micro(self) -> int:
        async with self._db.execute(
            "SELECT total_supply_cap - tokens_issued FROM supply_counter WHERE id = 1"
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def try_increment(self, amount: int) -> bool:
        """Compare-and-increment: one statement, so the cap check cannot race."""
        cursor = await self._db.execute(
            "UPDATE supply_counter SET tokens_issued = tokens_issued + ?, updated_at = ? "
            "WHERE id = 1 AND tokens_issued + ? <= total_supply_cap",
            (amount, time.time(), amount),
        )
        return cursor.rowcount > 0

    async def decrement(self, amount: int):
        await self._db.execute(
            "UPDATE supply_counter SET tokens_issued = MAX(tokens_issued - ?, 0), updated_at = ? "
            "WHERE id = 1",
            (amount, time.time()),
        )
