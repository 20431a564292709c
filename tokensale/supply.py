"""
supply.py - Supply ledger.

Admission control for token issuance. Every purchase credit and staking
reward goes through reserve(), which checks and increments the single
supply counter row in one UPDATE statement, so concurrent reservations
can never jointly overrun the cap.
"""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from tokensale.errors import InvalidAmount, SupplyExceeded
from tokensale.units import from_micro, to_decimal, to_micro

if TYPE_CHECKING:
    from tokensale.config import LedgerConfig
    from tokensale.storage import Database, SupplyRepo

logger = logging.getLogger("supply")


class SupplyLedger:
    """Tracks tokens issued against the hard supply cap."""

    def __init__(self, db: "Database", supply_repo: "SupplyRepo", config: "LedgerConfig"):
        self._db = db
        self._supply = supply_repo
        self._config = config

    async def setup_defaults(self):
        """Create the counter row on first start; an existing cap is kept."""
        async with self._db.transaction():
            await self._supply.ensure(to_micro(self._config.total_supply_cap))

    async def reserve(self, token_amount) -> Decimal:
        """Admit token_amount for issuance. Returns the tokens still available."""
        amount = to_micro(token_amount)
        remaining = await self.reserve_micro(amount)
        return from_micro(remaining)

    async def reserve_micro(self, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmount(f"Reservation must be positive, got {from_micro(amount)}")
        async with self._db.transaction():
            if not await self._supply.try_increment(amount):
                remaining = await self._supply.remaining_micro()
                logger.warning(
                    "Supply reservation rejected: requested=%s remaining=%s",
                    from_micro(amount), from_micro(remaining),
                )
                raise SupplyExceeded(from_micro(amount), from_micro(remaining))
            remaining = await self._supply.remaining_micro()
        logger.debug("Reserved %s tokens (remaining=%s)", from_micro(amount), from_micro(remaining))
        return remaining

    async def release(self, token_amount):
        """Give back a reservation whose purchase failed. Never goes below zero."""
        await self.release_micro(to_micro(token_amount))

    async def release_micro(self, amount: int):
        if amount <= 0:
            raise InvalidAmount(f"Release must be positive, got {from_micro(amount)}")
        async with self._db.transaction():
            await self._supply.decrement(amount)
        logger.info("Released %s tokens back to supply", from_micro(amount))

    async def status(self) -> dict:
        async with self._db.read():
            status = await self._supply.get()
        if status is None:
            cap = to_decimal(self._config.total_supply_cap)
            return {"total_supply_cap": cap, "tokens_issued": Decimal("0"),
                    "tokens_available": cap, "updated_at": None}
        return status
