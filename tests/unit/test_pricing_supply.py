"""
test_pricing_supply.py - PriceOracle and SupplyLedger.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from tokensale.errors import InvalidAmount, InvalidPrice, NoPriceAvailable, SupplyExceeded

pytestmark = pytest.mark.asyncio


class TestPriceOracle:

    async def test_fallback_before_any_price(self, svc):
        assert await svc.pricing.current_price() == Decimal("2.80")

    async def test_latest_price_wins(self, svc):
        await svc.pricing.set_price("2025-01-01", "3.00")
        await svc.pricing.set_price("2025-01-05", "3.50")
        assert await svc.pricing.current_price() == Decimal("3.50")
        assert await svc.pricing.current_price_micro() == 3_500_000

    async def test_price_at_uses_latest_earlier_day(self, svc):
        await svc.pricing.set_price(date(2025, 1, 1), "3.00")
        await svc.pricing.set_price(date(2025, 1, 10), "4.00")
        assert await svc.pricing.price_at("2025-01-05") == Decimal("3.00")
        assert await svc.pricing.price_at("2025-01-10") == Decimal("4.00")

    async def test_no_price_before_first_day(self, svc):
        await svc.pricing.set_price("2025-01-10", "4.00")
        with pytest.raises(NoPriceAvailable):
            await svc.pricing.price_at("2025-01-01")

    async def test_overwrite_same_day(self, svc):
        await svc.pricing.set_price("2025-01-01", "3.00")
        row = await svc.pricing.set_price("2025-01-01", "3.25", updated_by="admin")
        assert row["price"] == Decimal("3.25")
        assert len(await svc.pricing.history()) == 1

    @pytest.mark.parametrize("price", ["0", "-1", "abc"])
    async def test_rejects_bad_price(self, svc, price):
        with pytest.raises(InvalidPrice):
            await svc.pricing.set_price("2025-01-01", price)

    async def test_rejects_bad_date(self, svc):
        with pytest.raises(InvalidPrice):
            await svc.pricing.set_price("not-a-date", "3.00")

    async def test_set_today_uses_clock(self, svc):
        await svc.pricing.set_today("3.10")
        assert await svc.pricing.price_at(svc.clock.today()) == Decimal("3.10")


class TestSupplyLedger:

    async def test_initial_status(self, svc):
        status = await svc.supply.status()
        assert status["total_supply_cap"] == Decimal("1000000")
        assert status["tokens_issued"] == 0
        assert status["tokens_available"] == Decimal("1000000")

    async def test_reserve_and_release(self, svc):
        remaining = await svc.supply.reserve("250")
        assert remaining == Decimal("999750")
        await svc.supply.release("50")
        assert (await svc.supply.status())["tokens_issued"] == Decimal("200")

    async def test_reserve_beyond_cap(self, svc):
        await svc.supply.reserve("999990")
        with pytest.raises(SupplyExceeded) as exc:
            await svc.supply.reserve("11")
        assert exc.value.remaining == Decimal("10")
        assert (await svc.supply.status())["tokens_issued"] == Decimal("999990")

    async def test_reserve_exactly_to_cap(self, svc):
        await svc.supply.reserve("1000000")
        assert (await svc.supply.status())["tokens_available"] == 0

    async def test_release_never_below_zero(self, svc):
        await svc.supply.reserve("5")
        await svc.supply.release("10")
        assert (await svc.supply.status())["tokens_issued"] == 0

    async def test_rejects_non_positive(self, svc):
        with pytest.raises(InvalidAmount):
            await svc.supply.reserve("0")

    async def test_concurrent_reservations_respect_cap(self, svc):
        await svc.supply.reserve("999950")
        results = await asyncio.gather(
            svc.supply.reserve("40"), svc.supply.reserve("40"), return_exceptions=True,
        )
        assert sum(isinstance(r, SupplyExceeded) for r in results) == 1
        assert (await svc.supply.status())["tokens_issued"] == Decimal("999990")

    async def test_setup_keeps_existing_cap(self, svc):
        await svc.supply.reserve("10")
        await svc.supply.setup_defaults()
        assert (await svc.supply.status())["tokens_issued"] == Decimal("10")
