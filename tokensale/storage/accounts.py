import time
from typing import List, Optional

from tokensale.units import from_micro

from .database import Database

_COLUMNS = (
    "account_id, email, role, wallet_address, total_tokens, staked_tokens, available_tokens, "
    "cash_balance, referral_earnings, is_active, referral_code, referred_by, api_key, "
    "created_at, updated_at"
)


def _row_to_dict(row) -> dict:
    return {
        "account_id": row[0],
        "email": row[1],
        "role": row[2],
        "wallet_address": row[3],
        "total_tokens": from_micro(row[4]),
        "staked_tokens": from_micro(row[5]),
        "available_tokens": from_micro(row[6]),
        "cash_balance": from_micro(row[7]),
        "referral_earnings": from_micro(row[8]),
        "is_active": bool(row[9]),
        "referral_code": row[10],
        "referred_by": row[11],
        "api_key": row[12],
        "created_at": row[13],
        "updated_at": row[14],
    }


class AccountRepo:
    """Account rows. Balance columns are only touched through the guarded
    single-statement updates below; callers own the transaction."""

    def __init__(self, db: Database):
        self._db = db

    async def create(
        self,
        account_id: str,
        referral_code: str,
        email: str = "",
        role: str = "user",
        wallet_address: str = "",
        referred_by: Optional[str] = None,
        is_active: bool = False,
    ) -> dict:
        now = time.time()
        await self._db.execute(
            "INSERT INTO accounts (account_id, email, role, wallet_address, is_active, referral_code, "
            "referred_by, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (account_id, email, role, wallet_address, int(is_active), referral_code,
             referred_by, now, now),
        )
        return await self.get(account_id)

    async def _fetch_one(self, where: str, params: tuple) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM accounts WHERE {where}", params
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    async def get(self, account_id: str) -> Optional[dict]:
        return await self._fetch_one("account_id = ?", (account_id,))

    async def get_by_api_key(self, api_key: str) -> Optional[dict]:
        if not api_key:
            return None
        return await self._fetch_one("api_key = ? AND api_key != ''", (api_key,))

    async def get_by_wallet(self, address: str) -> Optional[dict]:
        if not address:
            return None
        return await self._fetch_one(
            "wallet_address = ? COLLATE NOCASE AND wallet_address != ''", (address,)
        )

    async def get_by_referral_code(self, code: str) -> Optional[dict]:
        if not code:
            return None
        return await self._fetch_one("referral_code = ?", (code,))

    async def get_by_email(self, email: str) -> Optional[dict]:
        if not email:
            return None
        return await self._fetch_one("email = ? COLLATE NOCASE", (email,))

    async def list_all(self, limit: Optional[int] = None, offset: int = 0) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM accounts ORDER BY created_at"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = (limit, offset)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def set_api_key(self, account_id: str, api_key: str):
        await self._db.execute(
            "UPDATE accounts SET api_key = ?, updated_at = ? WHERE account_id = ?",
            (api_key, time.time(), account_id),
        )

    async def set_active(self, account_id: str, active: bool) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET is_active = ?, updated_at = ? WHERE account_id = ?",
            (int(active), time.time(), account_id),
        )
        return cursor.rowcount > 0

    async def set_wallet(self, account_id: str, address: str) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET wallet_address = ?, updated_at = ? WHERE account_id = ?",
            (address, time.time(), account_id),
        )
        return cursor.rowcount > 0

    # -------------------------------------------------------------------
    # Guarded balance updates (micro-units). Each returns True when the
    # row matched, False when the guard (or the account) did not.
    # -------------------------------------------------------------------

    async def add_tokens(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET total_tokens = total_tokens + ?, "
            "available_tokens = available_tokens + ?, updated_at = ? WHERE account_id = ?",
            (amount, amount, time.time(), account_id),
        )
        return cursor.rowcount > 0

    async def remove_available_tokens(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET total_tokens = total_tokens - ?, "
            "available_tokens = available_tokens - ?, updated_at = ? "
            "WHERE account_id = ? AND available_tokens >= ?",
            (amount, amount, time.time(), account_id, amount),
        )
        return cursor.rowcount > 0

    async def move_to_staked(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET available_tokens = available_tokens - ?, "
            "staked_tokens = staked_tokens + ?, updated_at = ? "
            "WHERE account_id = ? AND available_tokens >= ?",
            (amount, amount, time.time(), account_id, amount),
        )
        return cursor.rowcount > 0

    async def release_staked(self, account_id: str, principal: int, returned: int) -> bool:
        """Move principal out of staked and `returned` into available.

        returned > principal adds rewards; returned < principal burns a penalty.
        total_tokens shifts by the difference so total = staked + available holds.
        """
        cursor = await self._db.execute(
            "UPDATE accounts SET staked_tokens = staked_tokens - ?, "
            "available_tokens = available_tokens + ?, total_tokens = total_tokens + ?, "
            "updated_at = ? WHERE account_id = ? AND staked_tokens >= ?",
            (principal, returned, returned - principal, time.time(), account_id, principal),
        )
        return cursor.rowcount > 0

    async def add_cash(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET cash_balance = cash_balance + ?, updated_at = ? WHERE account_id = ?",
            (amount, time.time(), account_id),
        )
        return cursor.rowcount > 0

    async def remove_cash(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET cash_balance = cash_balance - ?, updated_at = ? "
            "WHERE account_id = ? AND cash_balance >= ?",
            (amount, time.time(), account_id, amount),
        )
        return cursor.rowcount > 0

    async def add_referral_earnings(self, account_id: str, amount: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE accounts SET cash_balance = cash_balance + ?, "
            "referral_earnings = referral_earnings + ?, updated_at = ? WHERE account_id = ?",
            (amount, amount, time.time(), account_id),
        )
        return cursor.rowcount > 0

    async def totals(self) -> dict:
        async with self._db.execute(
            "SELECT COUNT(*), COALESCE(SUM(total_tokens), 0), COALESCE(SUM(staked_tokens), 0), "
            "COALESCE(SUM(available_tokens), 0), COALESCE(SUM(cash_balance), 0), "
            "COALESCE(SUM(is_active), 0) FROM accounts"
        ) as cursor:
            row = await cursor.fetchone()
        return {
            "accounts": row[0],
            "active_accounts": row[5],
            "total_tokens": from_micro(row[1]),
            "staked_tokens": from_micro(row[2]),
            "available_tokens": from_micro(row[3]),
            "cash_balance": from_micro(row[4]),
        }
