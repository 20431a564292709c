import time
from decimal import Decimal
from typing import List, Optional

from tokensale.units import from_micro

from .database import Database

_COLUMNS = (
    "position_id, account_id, amount, apy, lock_years, start_date, end_date, status, "
    "rewards_accrued, penalty, closed_at"
)


def _row_to_dict(row) -> dict:
    return {
        "position_id": row[0],
        "account_id": row[1],
        "amount": from_micro(row[2]),
        "apy": Decimal(row[3]),
        "lock_years": row[4],
        "start_date": row[5],
        "end_date": row[6],
        "status": row[7],
        "rewards_accrued": from_micro(row[8]),
        "penalty": from_micro(row[9]),
        "closed_at": row[10],
    }


class StakingRepo:
    """CRUD operations for the staking_positions table."""

    def __init__(self, db: Database):
        self._db = db

    async def create(
        self,
        position_id: str,
        account_id: str,
        amount: int,
        apy: Decimal,
        lock_years: int,
        start_date: float,
        end_date: float,
    ) -> dict:
        await self._db.execute(
            "INSERT INTO staking_positions (position_id, account_id, amount, apy, lock_years, "
            "start_date, end_date, status) VALUES (?, ?, ?, ?, ?, ?, ?, 'active')",
            (position_id, account_id, amount, str(apy), lock_years, start_date, end_date),
        )
        return await self.get(position_id)

    async def get(self, position_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM staking_positions WHERE position_id = ?", (position_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def close(
        self, position_id: str, status: str, rewards: int = 0, penalty: int = 0,
        closed_at: Optional[float] = None,
    ) -> bool:
        """Move an active position to a terminal status; False if it was not active."""
        cursor = await self._db.execute(
            "UPDATE staking_positions SET status = ?, rewards_accrued = ?, penalty = ?, closed_at = ? "
            "WHERE position_id = ? AND status = 'active'",
            (status, rewards, penalty, closed_at if closed_at is not None else time.time(), position_id),
        )
        return cursor.rowcount > 0

    async def list_due(self, now: float, limit: Optional[int] = None) -> List[dict]:
        query = (f"SELECT {_COLUMNS} FROM staking_positions "
                 "WHERE status = 'active' AND end_date <= ? ORDER BY end_date")
        params: tuple = (now,)
        if limit is not None:
            query += " LIMIT ?"
            params = (now, limit)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_for_account(self, account_id: str) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM staking_positions WHERE account_id = ? ORDER BY start_date DESC",
            (account_id,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_all(self, status: Optional[str] = None, limit: Optional[int] = None,
                       offset: int = 0) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM staking_positions"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY start_date DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        results = []
        async with self._db.execute(query, tuple(params)) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def stats(self) -> dict:
        async with self._db.execute(
            "SELECT "
            "COALESCE(SUM(CASE WHEN status = 'active' THEN amount END), 0), "
            "COALESCE(SUM(CASE WHEN status = 'active' THEN 1 END), 0), "
            "COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 END), 0), "
            "COALESCE(SUM(CASE WHEN status = 'cancelled' THEN 1 END), 0), "
            "COALESCE(SUM(rewards_accrued), 0), COALESCE(SUM(penalty), 0) "
            "FROM staking_positions"
        ) as cursor:
            row = await cursor.fetchone()
        return {
            "total_staked": from_micro(row[0]),
            "active_positions": row[1],
            "completed_positions": row[2],
            "cancelled_positions": row[3],
            "rewards_paid": from_micro(row[4]),
            "penalties_forfeited": from_micro(row[5]),
        }
