"""
purchases.py - Purchase commands.

Turns the UI's purchase / convert / deposit commands into ledger
primitives. A purchase paid from the cash balance settles at once; one paid
in USDT reserves supply and waits as a Pending entry until an admin
confirms or rejects the payment.
"""

import logging
from typing import TYPE_CHECKING

from tokensale.config import CASH_BALANCE_METHOD
from tokensale.errors import (
    AccountLocked,
    AccountNotFound,
    BelowMinimum,
    InvalidAmount,
    LedgerError,
)
from tokensale.states import EntryStatus
from tokensale.units import from_micro, to_decimal, to_micro, tokens_for_cash

if TYPE_CHECKING:
    from tokensale.config import LedgerConfig
    from tokensale.ledger import AccountLedger
    from tokensale.pricing import PriceOracle
    from tokensale.referrals import ReferralCommissionEngine
    from tokensale.storage import AccountRepo, Database

logger = logging.getLogger("purchases")


class PurchaseService:
    """Purchase, payment confirmation, conversion and manual deposits."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        ledger: "AccountLedger",
        pricing: "PriceOracle",
        referrals: "ReferralCommissionEngine",
        config: "LedgerConfig",
    ):
        self._db = db
        self._accounts = account_repo
        self._ledger = ledger
        self._pricing = pricing
        self._referrals = referrals
        self._config = config

    async def _active_account(self, account_id: str) -> dict:
        account = await self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        if not account["is_active"]:
            raise AccountLocked(account_id)
        return account

    async def purchase(self, account_id: str, cash_amount, payment_method: str = CASH_BALANCE_METHOD) -> dict:
        """Buy tokens for cash_amount at the current price. Returns the purchase entry."""
        cash = to_decimal(cash_amount)
        if payment_method not in self._config.payment_methods:
            raise LedgerError(f"Unsupported payment method {payment_method!r}")
        if cash < self._config.minimum_purchase:
            raise BelowMinimum("purchase", cash, self._config.minimum_purchase)

        async with self._db.transaction():
            await self._active_account(account_id)
            price = await self._pricing.current_price()
            tokens = from_micro(tokens_for_cash(to_micro(cash), to_micro(price)))
            if tokens <= 0:
                raise InvalidAmount(f"${cash} buys no tokens at {price}")

            if payment_method == CASH_BALANCE_METHOD:
                await self._ledger.debit_cash(account_id, cash)
                entry = await self._ledger.credit_purchase(
                    account_id, cash, tokens, price, payment_method=payment_method,
                )
                await self._referrals.on_first_qualifying_purchase(account_id, cash)
            else:
                entry = await self._ledger.open_pending_purchase(
                    account_id, cash, tokens, price, payment_method,
                )
        return entry

    async def confirm_payment(self, entry_id: int) -> dict:
        """Admin: the USDT payment arrived; credit the tokens and pay any referral."""
        async with self._db.transaction():
            before = await self._ledger.get_entry(entry_id)
            entry = await self._ledger.settle_pending_purchase(entry_id)
            if before["status"] == EntryStatus.PENDING.value:
                await self._referrals.on_first_qualifying_purchase(entry["account_id"], entry["cash_amount"])
        return entry

    async def reject_payment(self, entry_id: int) -> dict:
        """Admin: the payment never arrived; fail the entry and release the supply."""
        return await self._ledger.fail_pending_purchase(entry_id)

    async def convert_to_cash(self, account_id: str, token_amount) -> dict:
        tokens = to_decimal(token_amount)
        if tokens < self._config.minimum_conversion:
            raise BelowMinimum("conversion", tokens, self._config.minimum_conversion)
        async with self._db.transaction():
            await self._active_account(account_id)
            price = await self._pricing.current_price()
            return await self._ledger.convert_tokens_to_cash(account_id, tokens, price)

    async def manual_deposit(self, account_id: str, cash_amount, note: str = "", admin_id: str = "") -> dict:
        cash = to_decimal(cash_amount)
        if cash <= 0:
            raise InvalidAmount(f"Deposit must be positive, got {cash}")
        entry = await self._ledger.credit_cash_deposit(
            account_id, cash, description=note or f"Manual deposit by {admin_id or 'admin'}",
            reference_id=admin_id,
        )
        logger.info("Manual deposit: account=%s cash=%s admin=%s", account_id, cash, admin_id or "-")
        return entry
