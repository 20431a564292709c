"""
staking.py - Staking engine.

Positions lock tokens for a whole number of years at a fixed APY. Rewards
are flat and paid only at maturity: amount x apy% x lock_years, rounded
down to the micro-unit. mature_all() runs on a schedule; each due position
matures in its own transaction, so one failure does not stop the batch.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, List, Optional

from tokensale.clock import add_years
from tokensale.errors import (
    AccountLocked,
    AccountNotFound,
    InvalidAmount,
    InvalidLockPeriod,
    InvalidTransition,
    RecordNotFound,
)
from tokensale.states import PositionStatus, ensure_transition
from tokensale.units import from_micro, percent_of, to_decimal, to_micro

if TYPE_CHECKING:
    from tokensale.clock import Clock
    from tokensale.config import LedgerConfig
    from tokensale.ledger import AccountLedger
    from tokensale.storage import AccountRepo, Database, SettingsRepo, StakingRepo

logger = logging.getLogger("staking")

STAKING_APY_KEY = "staking_apy"


def calculate_rewards(amount_micro: int, apy: Decimal, lock_years: int) -> int:
    """Flat, non-compounding reward in micro-units."""
    return percent_of(amount_micro, apy * lock_years)


class StakingEngine:
    """Opens, matures and cancels staking positions."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        position_repo: "StakingRepo",
        settings_repo: "SettingsRepo",
        ledger: "AccountLedger",
        config: "LedgerConfig",
        clock: "Clock",
    ):
        self._db = db
        self._accounts = account_repo
        self._positions = position_repo
        self._settings = settings_repo
        self._ledger = ledger
        self._config = config
        self._clock = clock

    async def setup_defaults(self):
        async with self._db.transaction():
            await self._settings.ensure(STAKING_APY_KEY, str(self._config.default_staking_apy))

    # -------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------

    async def get_default_apy(self) -> Decimal:
        async with self._db.read():
            value = await self._settings.get(STAKING_APY_KEY)
        return Decimal(value) if value is not None else Decimal(self._config.default_staking_apy)

    async def set_default_apy(self, apy, updated_by: str = "") -> Decimal:
        rate = _apy(apy)
        async with self._db.transaction():
            await self._settings.set(STAKING_APY_KEY, str(rate), updated_by)
        logger.info("Default staking APY set to %s%% by %s", rate, updated_by or "-")
        return rate

    def _lock_years(self, lock_years: Optional[int]) -> int:
        years = self._config.default_lock_years if lock_years is None else lock_years
        if not isinstance(years, int) or isinstance(years, bool):
            raise InvalidLockPeriod(f"Lock period must be whole years, got {lock_years!r}")
        if not self._config.min_lock_years <= years <= self._config.max_lock_years:
            raise InvalidLockPeriod(
                f"Lock period must be {self._config.min_lock_years}-{self._config.max_lock_years} "
                f"years, got {years}"
            )
        return years

    # -------------------------------------------------------------------
    # Positions
    # -------------------------------------------------------------------

    async def open_position(self, account_id: str, amount, lock_years: Optional[int] = None,
                            apy=None) -> dict:
        years = self._lock_years(lock_years)
        tokens = to_micro(amount)
        if tokens <= 0:
            raise InvalidAmount(f"Stake amount must be positive, got {amount}")

        async with self._db.transaction():
            account = await self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if not account["is_active"]:
                raise AccountLocked(account_id)
            rate = _apy(apy) if apy is not None else await self._current_apy()

            position_id = f"stk-{uuid.uuid4().hex[:12]}"
            start = self._clock.now()
            end = add_years(start, years)
            await self._ledger.debit_for_stake(account_id, from_micro(tokens), position_id)
            position = await self._positions.create(
                position_id, account_id, tokens, rate, years, start.timestamp(), end.timestamp(),
            )
        logger.info(
            "Position %s opened: account=%s amount=%s apy=%s%% years=%d ends=%s",
            position_id, account_id, from_micro(tokens), rate, years, end.date().isoformat(),
        )
        return position

    async def _current_apy(self) -> Decimal:
        value = await self._settings.get(STAKING_APY_KEY)
        return Decimal(value) if value is not None else Decimal(self._config.default_staking_apy)

    async def mature_all(self, now: Optional[float] = None) -> dict:
        """Mature every Active position whose end date has passed."""
        now = self._clock.timestamp() if now is None else now
        async with self._db.read():
            due = await self._positions.list_due(now)

        matured, skipped, failed = 0, 0, 0
        for position in due:
            try:
                if await self._mature_one(position["position_id"], now):
                    matured += 1
                else:
                    skipped += 1
            except Exception:
                failed += 1
                logger.exception("Failed to mature position %s", position["position_id"])

        if due:
            logger.info("Maturity run: due=%d matured=%d skipped=%d failed=%d",
                        len(due), matured, skipped, failed)
        return {"due": len(due), "matured": matured, "skipped": skipped, "failed": failed}

    async def _mature_one(self, position_id: str, now: float) -> bool:
        async with self._db.transaction():
            position = await self._positions.get(position_id)
            if position is None or position["status"] != PositionStatus.ACTIVE.value:
                return False
            if position["end_date"] > now:
                return False
            amount = to_micro(position["amount"])
            rewards = calculate_rewards(amount, position["apy"], position["lock_years"])
            await self._ledger.credit_from_stake_maturity(
                position["account_id"], position["amount"], from_micro(rewards), position_id,
            )
            await self._positions.close(position_id, PositionStatus.COMPLETED.value,
                                        rewards=rewards, closed_at=now)
        return True

    async def cancel_position(self, position_id: str, account_id: Optional[str] = None) -> dict:
        """Early exit: principal minus the configured penalty goes back to available."""
        async with self._db.transaction():
            position = await self._positions.get(position_id)
            if position is None or (account_id is not None and position["account_id"] != account_id):
                raise RecordNotFound(f"Staking position {position_id} not found")
            ensure_transition(PositionStatus(position["status"]), PositionStatus.CANCELLED)
            now = self._clock.timestamp()
            if now >= position["end_date"]:
                raise InvalidTransition("staking position", "matured", PositionStatus.CANCELLED)

            amount = to_micro(position["amount"])
            penalty = percent_of(amount, Decimal(self._config.early_unstake_penalty_pct))
            await self._ledger.credit_from_stake_cancellation(
                position["account_id"], position["amount"], from_micro(penalty), position_id,
            )
            await self._positions.close(position_id, PositionStatus.CANCELLED.value,
                                        penalty=penalty, closed_at=now)
            position = await self._positions.get(position_id)
        logger.info("Position %s cancelled early: penalty=%s", position_id, from_micro(penalty))
        return position

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_position(self, position_id: str) -> dict:
        async with self._db.read():
            position = await self._positions.get(position_id)
        if position is None:
            raise RecordNotFound(f"Staking position {position_id} not found")
        return position

    async def list_positions(self, account_id: Optional[str] = None, status: Optional[str] = None,
                             limit: Optional[int] = 100, offset: int = 0) -> List[dict]:
        async with self._db.read():
            if account_id:
                return await self._positions.list_for_account(account_id)
            return await self._positions.list_all(status=status, limit=limit, offset=offset)

    async def stats(self) -> dict:
        async with self._db.read():
            stats = await self._positions.stats()
        stats["default_apy"] = await self.get_default_apy()
        return stats

    async def projected_rewards(self, amount, apy=None, lock_years: Optional[int] = None) -> dict:
        years = self._lock_years(lock_years)
        rate = _apy(apy) if apy is not None else await self.get_default_apy()
        principal = to_decimal(amount)
        if principal <= 0:
            raise InvalidAmount(f"Stake amount must be positive, got {amount}")
        rewards = from_micro(calculate_rewards(to_micro(principal), rate, years))
        start = self._clock.now()
        return {
            "amount": principal,
            "apy": rate,
            "lock_years": years,
            "rewards": rewards,
            "total_return": principal + rewards,
            "end_date": add_years(start, years).timestamp(),
        }


def _apy(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(f"APY must be a number, got {value!r}")
    if not rate.is_finite() or not 0 <= rate <= 100:
        raise InvalidAmount(f"APY must be within 0-100, got {value}")
    return rate

