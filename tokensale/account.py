"""
account.py - Account service.

Registration, activation and wallet linking. Balances are never touched
here; they belong to AccountLedger.
"""

import logging
import secrets
import string
import uuid
from typing import TYPE_CHECKING, List, Optional

from eth_utils import is_address, to_checksum_address

from tokensale.errors import AccountNotFound, InvalidAddress, LedgerError

if TYPE_CHECKING:
    from tokensale.storage import AccountRepo, Database, LedgerEntryRepo

logger = logging.getLogger("account")

REFERRAL_CODE_LENGTH = 8
_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def new_referral_code() -> str:
    return "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def normalize_wallet(address: str) -> str:
    """EIP-55 checksum form of an EVM address; InvalidAddress otherwise."""
    if not address or not is_address(address):
        raise InvalidAddress(f"Not a valid EVM address: {address!r}")
    return to_checksum_address(address)


class AccountService:
    """Account lifecycle backed by AccountRepo."""

    def __init__(self, db: "Database", account_repo: "AccountRepo", entry_repo: "LedgerEntryRepo"):
        self._db = db
        self._repo = account_repo
        self._entries = entry_repo

    async def register(
        self,
        email: str = "",
        referral_code: Optional[str] = None,
        wallet_address: str = "",
        account_id: Optional[str] = None,
        role: str = "user",
        active: bool = False,
    ) -> dict:
        """Create an account. New accounts start inactive unless told otherwise."""
        account_id = account_id or f"acct-{uuid.uuid4().hex[:12]}"
        wallet = normalize_wallet(wallet_address) if wallet_address else ""

        async with self._db.transaction():
            if await self._repo.get(account_id) is not None:
                raise LedgerError(f"Account {account_id} already exists")
            if email and await self._repo.get_by_email(email) is not None:
                raise LedgerError(f"Email {email} is already registered")
            if wallet and await self._repo.get_by_wallet(wallet) is not None:
                raise InvalidAddress(f"Wallet {wallet} is already linked to another account")

            referred_by = None
            if referral_code:
                referrer = await self._repo.get_by_referral_code(referral_code.strip().upper())
                if referrer is None:
                    logger.warning("Unknown referral code %r for new account %s", referral_code, account_id)
                else:
                    referred_by = referrer["referral_code"]

            code = new_referral_code()
            while await self._repo.get_by_referral_code(code) is not None:
                code = new_referral_code()

            account = await self._repo.create(
                account_id, code, email=email, role=role, wallet_address=wallet,
                referred_by=referred_by, is_active=active,
            )
        logger.info(
            "Registered account %s role=%s referred_by=%s active=%s",
            account_id, role, referred_by or "-", active,
        )
        return account

    async def activate(self, account_id: str) -> dict:
        return await self._set_active(account_id, True)

    async def deactivate(self, account_id: str) -> dict:
        return await self._set_active(account_id, False)

    async def _set_active(self, account_id: str, active: bool) -> dict:
        async with self._db.transaction():
            if not await self._repo.set_active(account_id, active):
                raise AccountNotFound(account_id)
            account = await self._repo.get(account_id)
        logger.info("Account %s %s", account_id, "activated" if active else "deactivated")
        return account

    async def set_wallet_address(self, account_id: str, address: str) -> dict:
        wallet = normalize_wallet(address)
        async with self._db.transaction():
            if await self._repo.get(account_id) is None:
                raise AccountNotFound(account_id)
            owner = await self._repo.get_by_wallet(wallet)
            if owner is not None and owner["account_id"] != account_id:
                raise InvalidAddress(f"Wallet {wallet} is already linked to another account")
            await self._repo.set_wallet(account_id, wallet)
            account = await self._repo.get(account_id)
        logger.info("Account %s linked wallet %s", account_id, wallet)
        return account

    async def get_account(self, account_id: str) -> dict:
        async with self._db.read():
            account = await self._repo.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def find_by_wallet(self, address: str) -> Optional[dict]:
        async with self._db.read():
            return await self._repo.get_by_wallet(address)

    async def list_accounts(self, limit: Optional[int] = None, offset: int = 0) -> List[dict]:
        async with self._db.read():
            return await self._repo.list_all(limit=limit, offset=offset)

    async def history(self, account_id: str, limit: Optional[int] = 100) -> List[dict]:
        async with self._db.read():
            if await self._repo.get(account_id) is None:
                raise AccountNotFound(account_id)
            return await self._entries.list_for_account(account_id, limit)

    async def totals(self) -> dict:
        async with self._db.read():
            return await self._repo.totals()
