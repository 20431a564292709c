"""
test_staking.py - StakingEngine: positions, maturity, early cancellation.
"""

from decimal import Decimal

import pytest

from tokensale.errors import (
    AccountLocked,
    InsufficientAvailable,
    InvalidAmount,
    InvalidLockPeriod,
    InvalidTransition,
    RecordNotFound,
)
from tokensale.staking import calculate_rewards
from tokensale.states import PositionStatus
from tokensale.units import to_micro


class TestRewards:

    def test_flat_reward(self):
        assert calculate_rewards(to_micro(1000), Decimal("12.5"), 3) == to_micro(375)

    def test_rounds_down(self):
        assert calculate_rewards(1, Decimal("12.5"), 1) == 0


@pytest.mark.asyncio
class TestOpenPosition:

    async def test_opens_with_default_apy_and_lock(self, svc, make_account):
        acct = await make_account(tokens="1000")
        position = await svc.staking.open_position(acct["account_id"], "1000")
        assert position["status"] == PositionStatus.ACTIVE.value
        assert position["apy"] == Decimal("12.5")
        assert position["lock_years"] == 3
        assert position["end_date"] > position["start_date"]

        after = await svc.ledger.get_account(acct["account_id"])
        assert after["staked_tokens"] == Decimal("1000")
        assert after["available_tokens"] == 0

    async def test_apy_is_fixed_at_open(self, svc, make_account):
        acct = await make_account(tokens="100")
        position = await svc.staking.open_position(acct["account_id"], "100", lock_years=1)
        await svc.staking.set_default_apy("20")
        assert (await svc.staking.get_position(position["position_id"]))["apy"] == Decimal("12.5")

    @pytest.mark.parametrize("years", [0, 6])
    async def test_lock_years_range(self, svc, make_account, years):
        acct = await make_account(tokens="100")
        with pytest.raises(InvalidLockPeriod):
            await svc.staking.open_position(acct["account_id"], "100", lock_years=years)

    async def test_more_than_available(self, svc, make_account):
        acct = await make_account(tokens="100")
        with pytest.raises(InsufficientAvailable):
            await svc.staking.open_position(acct["account_id"], "100.000001")
        assert await svc.staking.list_positions(account_id=acct["account_id"]) == []

    async def test_inactive_account(self, svc, make_account):
        acct = await make_account(active=False, tokens="100")
        with pytest.raises(AccountLocked):
            await svc.staking.open_position(acct["account_id"], "100")

    async def test_rejects_bad_apy(self, svc):
        with pytest.raises(InvalidAmount):
            await svc.staking.set_default_apy("101")


@pytest.mark.asyncio
class TestMaturity:

    async def test_matures_with_rewards(self, svc, make_account):
        acct = await make_account(tokens="1000")
        position = await svc.staking.open_position(acct["account_id"], "1000", lock_years=3)

        svc.clock.advance_years(3)
        result = await svc.staking.mature_all()
        assert result == {"due": 1, "matured": 1, "skipped": 0, "failed": 0}

        after = await svc.ledger.get_account(acct["account_id"])
        assert after["available_tokens"] == Decimal("1375")
        assert after["staked_tokens"] == 0
        closed = await svc.staking.get_position(position["position_id"])
        assert closed["status"] == PositionStatus.COMPLETED.value
        assert closed["rewards_accrued"] == Decimal("375")

    async def test_not_due_yet(self, svc, make_account):
        acct = await make_account(tokens="100")
        await svc.staking.open_position(acct["account_id"], "100", lock_years=1)
        svc.clock.advance(days=364)
        assert (await svc.staking.mature_all())["due"] == 0

    async def test_second_run_is_noop(self, svc, make_account):
        acct = await make_account(tokens="100")
        await svc.staking.open_position(acct["account_id"], "100", lock_years=1)
        svc.clock.advance_years(1)
        await svc.staking.mature_all()
        assert (await svc.staking.mature_all())["due"] == 0
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == Decimal("112.5")

    async def test_failure_leaves_position_active(self, svc, make_account, config):
        acct = await make_account(tokens="100")
        position = await svc.staking.open_position(acct["account_id"], "100", lock_years=1)
        # Rewards cannot be issued once the cap is reached
        status = await svc.supply.status()
        await svc.supply.reserve(status["tokens_available"])
        svc.clock.advance_years(1)

        result = await svc.staking.mature_all()
        assert result["failed"] == 1
        assert (await svc.staking.get_position(position["position_id"]))["status"] == PositionStatus.ACTIVE.value
        assert (await svc.ledger.get_account(acct["account_id"]))["staked_tokens"] == Decimal("100")


@pytest.mark.asyncio
class TestCancellation:

    async def test_cancel_applies_penalty(self, svc, make_account):
        acct = await make_account(tokens="1000")
        position = await svc.staking.open_position(acct["account_id"], "1000")
        cancelled = await svc.staking.cancel_position(position["position_id"], account_id=acct["account_id"])
        assert cancelled["status"] == PositionStatus.CANCELLED.value
        assert cancelled["penalty"] == Decimal("100")

        after = await svc.ledger.get_account(acct["account_id"])
        assert after["available_tokens"] == Decimal("900")
        assert after["total_tokens"] == Decimal("900")

    async def test_cancel_twice(self, svc, make_account):
        acct = await make_account(tokens="100")
        position = await svc.staking.open_position(acct["account_id"], "100")
        await svc.staking.cancel_position(position["position_id"])
        with pytest.raises(InvalidTransition):
            await svc.staking.cancel_position(position["position_id"])

    async def test_cannot_cancel_after_end_date(self, svc, make_account):
        acct = await make_account(tokens="100")
        position = await svc.staking.open_position(acct["account_id"], "100", lock_years=1)
        svc.clock.advance_years(1)
        with pytest.raises(InvalidTransition):
            await svc.staking.cancel_position(position["position_id"])

    async def test_other_account_cannot_cancel(self, svc, make_account):
        owner = await make_account(tokens="100")
        other = await make_account()
        position = await svc.staking.open_position(owner["account_id"], "100")
        with pytest.raises(RecordNotFound):
            await svc.staking.cancel_position(position["position_id"], account_id=other["account_id"])


@pytest.mark.asyncio
class TestReads:

    async def test_projection(self, svc):
        projection = await svc.staking.projected_rewards("1000", lock_years=3)
        assert projection["rewards"] == Decimal("375")
        assert projection["total_return"] == Decimal("1375")

    async def test_stats(self, svc, make_account):
        acct = await make_account(tokens="300")
        await svc.staking.open_position(acct["account_id"], "100")
        second = await svc.staking.open_position(acct["account_id"], "100")
        await svc.staking.cancel_position(second["position_id"])
        stats = await svc.staking.stats()
        assert stats["active_positions"] == 1
        assert stats["cancelled_positions"] == 1
        assert stats["total_staked"] == Decimal("100")
