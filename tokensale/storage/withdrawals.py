import sqlite3
import time
from typing import List, Optional

from tokensale.errors import WithdrawalPending
from tokensale.units import from_micro

from .database import Database

_COLUMNS = (
    "withdrawal_id, account_id, asset, amount, network, destination_address, status, "
    "lock_period_days, requested_at, decided_at, decided_by, reason, ledger_entry_id, "
    "tx_hash, completed_at"
)


def _row_to_dict(row) -> dict:
    return {
        "withdrawal_id": row[0],
        "account_id": row[1],
        "asset": row[2],
        "amount": from_micro(row[3]),
        "network": row[4],
        "destination_address": row[5],
        "status": row[6],
        "lock_period_days": row[7],
        "requested_at": row[8],
        "decided_at": row[9],
        "decided_by": row[10],
        "reason": row[11],
        "ledger_entry_id": row[12],
        "tx_hash": row[13],
        "completed_at": row[14],
    }


class WithdrawalRepo:
    """CRUD operations for the withdrawal_requests table."""

    def __init__(self, db: Database):
        self._db = db

    async def create(
        self,
        withdrawal_id: str,
        account_id: str,
        asset: str,
        amount: int,
        network: str,
        destination_address: str,
        lock_period_days: int,
        requested_at: float,
    ) -> dict:
        try:
            await self._db.execute(
                "INSERT INTO withdrawal_requests (withdrawal_id, account_id, asset, amount, network, "
                "destination_address, status, lock_period_days, requested_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)",
                (withdrawal_id, account_id, asset, amount, network, destination_address,
                 lock_period_days, requested_at),
            )
        except sqlite3.IntegrityError as exc:
            if "withdrawal_requests.account_id" in str(exc):
                raise WithdrawalPending(
                    f"Account {account_id} already has a pending {asset} withdrawal"
                ) from exc
            raise
        return await self.get(withdrawal_id)

    async def get(self, withdrawal_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM withdrawal_requests WHERE withdrawal_id = ?", (withdrawal_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def get_pending(self, account_id: str, asset: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM withdrawal_requests "
            "WHERE account_id = ? AND asset = ? AND status = 'pending'",
            (account_id, asset),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def transition(
        self,
        withdrawal_id: str,
        from_status: str,
        to_status: str,
        decided_by: Optional[str] = None,
        reason: Optional[str] = None,
        ledger_entry_id: Optional[int] = None,
        tx_hash: Optional[str] = None,
    ) -> bool:
        """Compare-and-set the status plus whichever bookkeeping fields are given."""
        now = time.time()
        sets = ["status = ?"]
        params: list = [to_status]
        if to_status in ("approved", "rejected"):
            sets.append("decided_at = ?")
            params.append(now)
        if to_status == "completed":
            sets.append("completed_at = ?")
            params.append(now)
        for column, value in (
            ("decided_by", decided_by),
            ("reason", reason),
            ("ledger_entry_id", ledger_entry_id),
            ("tx_hash", tx_hash),
        ):
            if value is not None:
                sets.append(f"{column} = ?")
                params.append(value)
        params.extend([withdrawal_id, from_status])
        cursor = await self._db.execute(
            f"UPDATE withdrawal_requests SET {', '.join(sets)} "
            "WHERE withdrawal_id = ? AND status = ?",
            tuple(params),
        )
        return cursor.rowcount > 0

    async def list_for_account(self, account_id: str) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM withdrawal_requests WHERE account_id = ? ORDER BY requested_at DESC",
            (account_id,),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_all(self, status: Optional[str] = None, limit: Optional[int] = None,
                       offset: int = 0) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM withdrawal_requests"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY requested_at"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        results = []
        async with self._db.execute(query, tuple(params)) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results
