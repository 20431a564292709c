"""
referrals.py - Referral commission engine.

A referrer earns one commission per referred account, computed from that
account's first settled purchase at the commission rate in force at the
time. The (referrer, referred) pair is UNIQUE in the database, so repeat
purchases and concurrent settlements cannot produce a second record.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, List, Optional

from tokensale.errors import AccountNotFound, InvalidCommissionRate
from tokensale.units import from_micro, percent_of, to_micro

if TYPE_CHECKING:
    from tokensale.clock import Clock
    from tokensale.config import LedgerConfig
    from tokensale.ledger import AccountLedger
    from tokensale.storage import AccountRepo, Database, ReferralRepo, SettingsRepo

logger = logging.getLogger("referrals")

COMMISSION_RATE_KEY = "commission_rate"


class ReferralCommissionEngine:
    """Computes and pays one-time referral commissions."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        referral_repo: "ReferralRepo",
        settings_repo: "SettingsRepo",
        ledger: "AccountLedger",
        config: "LedgerConfig",
        clock: "Clock",
    ):
        self._db = db
        self._accounts = account_repo
        self._referrals = referral_repo
        self._settings = settings_repo
        self._ledger = ledger
        self._config = config
        self._clock = clock

    async def setup_defaults(self):
        async with self._db.transaction():
            await self._settings.ensure(COMMISSION_RATE_KEY, str(self._config.default_commission_rate))

    async def get_commission_rate(self) -> Decimal:
        async with self._db.read():
            value = await self._settings.get(COMMISSION_RATE_KEY)
        if value is None:
            return Decimal(self._config.default_commission_rate)
        return Decimal(value)

    async def set_commission_rate(self, percent, updated_by: str = "") -> Decimal:
        try:
            rate = Decimal(str(percent))
        except InvalidOperation:
            raise InvalidCommissionRate(f"Commission rate must be a number, got {percent!r}")
        if not rate.is_finite() or not 0 <= rate <= 100:
            raise InvalidCommissionRate(f"Commission rate must be within 0-100, got {percent}")
        async with self._db.transaction():
            await self._settings.set(COMMISSION_RATE_KEY, str(rate), updated_by)
        logger.info("Commission rate set to %s%% by %s", rate, updated_by or "-")
        return rate

    async def on_first_qualifying_purchase(self, referred_account_id: str,
                                           purchase_amount) -> Optional[dict]:
        """Pay the referrer of referred_account_id, once. Returns the record when one is created."""
        purchase_micro = to_micro(purchase_amount)
        async with self._db.transaction():
            account = await self._accounts.get(referred_account_id)
            if account is None:
                raise AccountNotFound(referred_account_id)
            if not account["referred_by"]:
                return None

            referrer = await self._accounts.get_by_referral_code(account["referred_by"])
            if referrer is None:
                logger.warning(
                    "Referral code %s of %s no longer resolves", account["referred_by"], referred_account_id,
                )
                return None
            referrer_id = referrer["account_id"]
            if referrer_id == referred_account_id:
                return None
            if await self._referrals.get_for_pair(referrer_id, referred_account_id) is not None:
                return None

            rate = await self._current_rate()
            amount = percent_of(purchase_micro, rate)
            today = self._clock.today()
            record = await self._referrals.create(
                referrer_id, referred_account_id, purchase_micro, amount, rate,
                month=today.month, year=today.year,
            )
            if record is None:
                return None
            if amount <= 0:
                # Nothing to pay, but the pair is spent: close the record without a ledger entry.
                await self._referrals.mark_paid(record["id"])
                logger.info(
                    "Zero commission for %s -> %s (rate=%s%% purchase=%s)",
                    referrer_id, referred_account_id, rate, from_micro(purchase_micro),
                )
                return await self._referrals.get(record["id"])
            return await self._ledger.credit_commission(referrer_id, from_micro(amount), record["id"])

    async def _current_rate(self) -> Decimal:
        value = await self._settings.get(COMMISSION_RATE_KEY)
        return Decimal(value) if value is not None else Decimal(self._config.default_commission_rate)

    async def list_commissions(self, referrer_id: Optional[str] = None,
                               limit: Optional[int] = 100, offset: int = 0) -> List[dict]:
        async with self._db.read():
            if referrer_id:
                return await self._referrals.list_for_referrer(referrer_id)
            return await self._referrals.list_all(limit=limit, offset=offset)

    async def stats(self) -> dict:
        async with self._db.read():
            stats = await self._referrals.stats()
        stats["commission_rate"] = await self.get_commission_rate()
        return stats
