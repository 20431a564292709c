"""
pricing.py - Token price oracle.

Prices are kept per calendar day. The current price is the latest entry by
date, or the configured fallback before any price has been set. Settled
ledger entries carry their own price, so overwriting a day never changes
history.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, List, Union

from tokensale.errors import InvalidPrice, NoPriceAvailable
from tokensale.units import to_decimal, to_micro

if TYPE_CHECKING:
    from tokensale.clock import Clock
    from tokensale.config import LedgerConfig
    from tokensale.storage import Database, PriceRepo

logger = logging.getLogger("pricing")

Day = Union[date, str]


def _day(value: Day) -> str:
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(value).isoformat()
    except (TypeError, ValueError):
        raise InvalidPrice(f"Not a calendar date: {value!r}")


class PriceOracle:
    """Resolves current and historical token prices."""

    def __init__(self, db: "Database", price_repo: "PriceRepo", config: "LedgerConfig", clock: "Clock"):
        self._db = db
        self._prices = price_repo
        self._config = config
        self._clock = clock

    async def current_price(self) -> Decimal:
        async with self._db.read():
            latest = await self._prices.latest()
        if latest is None:
            return to_decimal(self._config.fallback_price)
        return latest["price"]

    async def current_price_micro(self) -> int:
        return to_micro(await self.current_price())

    async def price_at(self, day: Day) -> Decimal:
        """Exact match, else the latest earlier price; NoPriceAvailable if none precedes it."""
        key = _day(day)
        async with self._db.read():
            entry = await self._prices.latest_on_or_before(key)
        if entry is None:
            raise NoPriceAvailable(f"No token price on or before {key}")
        return entry["price"]

    async def set_price(self, day: Day, price, updated_by: str = "") -> dict:
        key = _day(day)
        try:
            value = to_decimal(price)
        except ValueError:
            raise InvalidPrice(f"Price must be a number, got {price!r}")
        if value <= 0:
            raise InvalidPrice(f"Price must be positive, got {value}")

        async with self._db.transaction():
            await self._prices.upsert(key, to_micro(value), updated_by)
            entry = await self._prices.get(key)
        logger.info("Price for %s set to %s by %s", key, value, updated_by or "-")
        return entry

    async def set_today(self, price, updated_by: str = "") -> dict:
        return await self.set_price(self._clock.today(), price, updated_by)

    async def history(self, limit: int = 30) -> List[dict]:
        async with self._db.read():
            return await self._prices.history(limit)
