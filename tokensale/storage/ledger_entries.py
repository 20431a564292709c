import sqlite3
import time
from typing import List, Optional

from tokensale.errors import DuplicateExternalRef
from tokensale.units import from_micro

from .database import Database

_COLUMNS = (
    "id, account_id, kind, cash_amount, token_amount, price_per_token, status, "
    "payment_method, external_ref, reference_id, description, created_at, updated_at"
)


def _row_to_dict(row) -> dict:
    return {
        "id": row[0],
        "account_id": row[1],
        "kind": row[2],
        "cash_amount": from_micro(row[3]),
        "token_amount": from_micro(row[4]),
        "price_per_token": from_micro(row[5]),
        "status": row[6],
        "payment_method": row[7],
        "external_ref": row[8],
        "reference_id": row[9],
        "description": row[10],
        "created_at": row[11],
        "updated_at": row[12],
    }


class LedgerEntryRepo:
    """Append-only ledger entries. Amounts are written as micro-units."""

    def __init__(self, db: Database):
        self._db = db

    async def insert(
        self,
        account_id: str,
        kind: str,
        status: str,
        cash_amount: int = 0,
        token_amount: int = 0,
        price_per_token: int = 0,
        payment_method: str = "",
        external_ref: Optional[str] = None,
        reference_id: str = "",
        description: str = "",
    ) -> dict:
        now = time.time()
        try:
            cursor = await self._db.execute(
                "INSERT INTO ledger_entries (account_id, kind, cash_amount, token_amount, "
                "price_per_token, status, payment_method, external_ref, reference_id, description, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (account_id, kind, cash_amount, token_amount, price_per_token, status,
                 payment_method, external_ref, reference_id, description, now, now),
            )
        except sqlite3.IntegrityError as exc:
            if external_ref is not None and "external_ref" in str(exc):
                raise DuplicateExternalRef(external_ref) from exc
            raise
        return await self.get(cursor.lastrowid)

    async def get(self, entry_id: int) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM ledger_entries WHERE id = ?", (entry_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def get_by_external_ref(self, external_ref: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM ledger_entries WHERE external_ref = ?", (external_ref,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def transition(self, entry_id: int, from_status: str, to_status: str) -> bool:
        """Compare-and-set the status; False if the entry was not in from_status."""
        cursor = await self._db.execute(
            "UPDATE ledger_entries SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (to_status, time.time(), entry_id, from_status),
        )
        return cursor.rowcount > 0

    async def list_for_account(self, account_id: str, limit: Optional[int] = None) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM ledger_entries WHERE account_id = ? ORDER BY id DESC"
        params: tuple = (account_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (account_id, limit)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_all(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[dict]:
        clauses, params = [], []
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        if status:
            clauses.append("status = ?")
            params.append(status)
        query = f"SELECT {_COLUMNS} FROM ledger_entries"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        results = []
        async with self._db.execute(query, tuple(params)) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM ledger_entries") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
