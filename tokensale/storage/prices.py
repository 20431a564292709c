import time
from typing import List, Optional

from tokensale.units import from_micro

from .database import Database


def _row_to_dict(row) -> dict:
    return {
        "date": row[0],
        "price": from_micro(row[1]),
        "updated_by": row[2],
        "updated_at": row[3],
    }


class PriceRepo:
    """Date-indexed token prices. Dates are ISO 'YYYY-MM-DD' strings, so
    lexicographic order is chronological order."""

    def __init__(self, db: Database):
        self._db = db

    async def upsert(self, day: str, price: int, updated_by: str = ""):
        await self._db.execute(
            "INSERT INTO token_prices (date, price, updated_by, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(date) DO UPDATE SET price = excluded.price, "
            "updated_by = excluded.updated_by, updated_at = excluded.updated_at",
            (day, price, updated_by, time.time()),
        )

    async def get(self, day: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT date, price, updated_by, updated_at FROM token_prices WHERE date = ?", (day,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def latest(self) -> Optional[dict]:
        async with self._db.execute(
            "SELECT date, price, updated_by, updated_at FROM token_prices ORDER BY date DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def latest_on_or_before(self, day: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT date, price, updated_by, updated_at FROM token_prices "
            "WHERE date <= ? ORDER BY date DESC LIMIT 1",
            (day,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def history(self, limit: int = 30) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT date, price, updated_by, updated_at FROM token_prices ORDER BY date DESC LIMIT ?",
            (limit,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results
