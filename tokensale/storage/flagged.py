import time
from typing import List, Optional

from tokensale.units import from_micro

from .database import Database

_FLAG_COLUMNS = (
    "tx_hash, from_address, to_address, value, block_number, direction, reason, severity, "
    "account_id, status, created_at, resolved_at, resolved_by, note"
)


def _flag_to_dict(row) -> dict:
    return {
        "tx_hash": row[0],
        "from_address": row[1],
        "to_address": row[2],
        "value": from_micro(row[3]),
        "block_number": row[4],
        "direction": row[5],
        "reason": row[6],
        "severity": row[7],
        "account_id": row[8],
        "status": row[9],
        "created_at": row[10],
        "resolved_at": row[11],
        "resolved_by": row[12],
        "note": row[13],
    }


class FlaggedTransferRepo:
    """Admin review queue of transfers the reconciler could not match."""

    def __init__(self, db: Database):
        self._db = db

    async def insert(
        self,
        tx_hash: str,
        from_address: str,
        to_address: str,
        value: int,
        block_number: int,
        direction: str,
        reason: str,
        severity: str,
        account_id: Optional[str] = None,
    ) -> bool:
        """Record a flag; False if this hash is already flagged."""
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO flagged_transfers (tx_hash, from_address, to_address, value, "
            "block_number, direction, reason, severity, account_id, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', ?)",
            (tx_hash, from_address, to_address, value, block_number, direction, reason,
             severity, account_id, time.time()),
        )
        return cursor.rowcount > 0

    async def get(self, tx_hash: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_FLAG_COLUMNS} FROM flagged_transfers WHERE tx_hash = ?", (tx_hash,)
        ) as cursor:
            row = await cursor.fetchone()
        return _flag_to_dict(row) if row else None

    async def list_all(self, status: Optional[str] = None, limit: Optional[int] = None,
                       offset: int = 0) -> List[dict]:
        query = f"SELECT {_FLAG_COLUMNS} FROM flagged_transfers"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        results = []
        async with self._db.execute(query, tuple(params)) as cursor:
            async for row in cursor:
                results.append(_flag_to_dict(row))
        return results

    async def resolve(self, tx_hash: str, resolved_by: str, note: str = "") -> bool:
        cursor = await self._db.execute(
            "UPDATE flagged_transfers SET status = 'resolved', resolved_at = ?, resolved_by = ?, note = ? "
            "WHERE tx_hash = ? AND status = 'open'",
            (time.time(), resolved_by, note, tx_hash),
        )
        return cursor.rowcount > 0

    async def count_open(self) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM flagged_transfers WHERE status = 'open'"
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0


class ChainTransferRepo:
    """Audit rows for matched transfers that carry no ledger entry of their own."""

    def __init__(self, db: Database):
        self._db = db

    async def insert(self, tx_hash: str, account_id: str, direction: str, value: int,
                     block_number: int = 0) -> bool:
        cursor = await self._db.execute(
            "INSERT OR IGNORE INTO chain_transfers (tx_hash, account_id, direction, value, "
            "block_number, processed_at) VALUES (?, ?, ?, ?, ?, ?)",
            (tx_hash, account_id, direction, value, block_number, time.time()),
        )
        return cursor.rowcount > 0

    async def get(self, tx_hash: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT tx_hash, account_id, direction, value, block_number, processed_at "
            "FROM chain_transfers WHERE tx_hash = ?",
            (tx_hash,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "tx_hash": row[0],
            "account_id": row[1],
            "direction": row[2],
            "value": from_micro(row[3]),
            "block_number": row[4],
            "processed_at": row[5],
        }
