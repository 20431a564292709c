import sqlite3
import time
from decimal import Decimal
from typing import List, Optional

from tokensale.units import from_micro

from .database import Database

_COLUMNS = (
    "id, referrer_id, referred_account_id, purchase_amount, amount, percentage, status, "
    "month, year, created_at, paid_at"
)


def _row_to_dict(row) -> dict:
    return {
        "id": row[0],
        "referrer_id": row[1],
        "referred_account_id": row[2],
        "purchase_amount": from_micro(row[3]),
        "amount": from_micro(row[4]),
        "percentage": Decimal(row[5]),
        "status": row[6],
        "month": row[7],
        "year": row[8],
        "created_at": row[9],
        "paid_at": row[10],
    }


class ReferralRepo:
    """Referral commission records, unique per (referrer, referred) pair."""

    def __init__(self, db: Database):
        self._db = db

    async def create(
        self,
        referrer_id: str,
        referred_account_id: str,
        purchase_amount: int,
        amount: int,
        percentage: Decimal,
        month: int,
        year: int,
    ) -> Optional[dict]:
        """Insert a pending record; None if the pair already has one."""
        try:
            cursor = await self._db.execute(
                "INSERT INTO referral_commissions (referrer_id, referred_account_id, purchase_amount, "
                "amount, percentage, status, month, year, created_at) "
                "VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)",
                (referrer_id, referred_account_id, purchase_amount, amount, str(percentage),
                 month, year, time.time()),
            )
        except sqlite3.IntegrityError:
            return None
        return await self.get(cursor.lastrowid)

    async def get(self, commission_id: int) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM referral_commissions WHERE id = ?", (commission_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def get_for_pair(self, referrer_id: str, referred_account_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM referral_commissions "
            "WHERE referrer_id = ? AND referred_account_id = ?",
            (referrer_id, referred_account_id),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def mark_paid(self, commission_id: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE referral_commissions SET status = 'paid', paid_at = ? "
            "WHERE id = ? AND status = 'pending'",
            (time.time(), commission_id),
        )
        return cursor.rowcount > 0

    async def list_for_referrer(self, referrer_id: str) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM referral_commissions WHERE referrer_id = ? ORDER BY created_at DESC",
            (referrer_id,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_all(self, limit: Optional[int] = None, offset: int = 0) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM referral_commissions ORDER BY created_at DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = (limit, offset)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def stats(self) -> dict:
        async with self._db.execute(
            "SELECT COUNT(*), COALESCE(SUM(amount), 0), COUNT(DISTINCT referrer_id) "
            "FROM referral_commissions WHERE status = 'paid' AND amount > 0"
        ) as cursor:
            row = await cursor.fetchone()
        return {
            "commissions_paid": row[0],
            "total_paid": from_micro(row[1]),
            "referrers": row[2],
        }
