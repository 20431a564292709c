"""
test_purchases_referrals.py - PurchaseService and ReferralCommissionEngine.
"""

import asyncio
from decimal import Decimal

import pytest

from tokensale.errors import (
    AccountLocked,
    BelowMinimum,
    InsufficientAvailable,
    InvalidCommissionRate,
    LedgerError,
    SupplyExceeded,
)
from tokensale.notifications import EventType
from tokensale.states import CommissionStatus, EntryKind, EntryStatus

pytestmark = pytest.mark.asyncio


# ── Purchases ─────────────────────────────────────────────────────────────

class TestPurchase:

    async def test_cash_purchase_at_current_price(self, svc, make_account):
        await svc.pricing.set_today("2.80")
        acct = await make_account(cash="280")
        entry = await svc.purchases.purchase(acct["account_id"], "280")
        assert entry["token_amount"] == Decimal("100")
        assert entry["status"] == EntryStatus.COMPLETED.value

        after = await svc.ledger.get_account(acct["account_id"])
        assert after["available_tokens"] == Decimal("100")
        assert after["cash_balance"] == 0

    async def test_price_change_does_not_touch_settled_entry(self, svc, make_account):
        await svc.pricing.set_price("2025-01-01", "2.80")
        acct = await make_account(cash="280")
        entry = await svc.purchases.purchase(acct["account_id"], "280")
        await svc.pricing.set_price("2025-01-01", "5.00")
        stored = await svc.ledger.get_entry(entry["id"])
        assert stored["price_per_token"] == Decimal("2.80")
        assert stored["token_amount"] == Decimal("100")

    async def test_inactive_account_cannot_buy(self, svc, make_account):
        acct = await make_account(active=False, cash="100")
        with pytest.raises(AccountLocked):
            await svc.purchases.purchase(acct["account_id"], "50")

    async def test_below_minimum(self, svc, make_account):
        acct = await make_account(cash="100")
        with pytest.raises(BelowMinimum):
            await svc.purchases.purchase(acct["account_id"], "9.99")

    async def test_unsupported_method(self, svc, make_account):
        acct = await make_account(cash="100")
        with pytest.raises(LedgerError):
            await svc.purchases.purchase(acct["account_id"], "50", payment_method="paypal")

    async def test_insufficient_cash_rolls_back(self, svc, make_account):
        acct = await make_account(cash="20")
        with pytest.raises(InsufficientAvailable):
            await svc.purchases.purchase(acct["account_id"], "28")
        assert (await svc.supply.status())["tokens_issued"] == 0

    async def test_usdt_purchase_waits_for_confirmation(self, svc, make_account):
        acct = await make_account()
        entry = await svc.purchases.purchase(acct["account_id"], "280", payment_method="usdt_trc20")
        assert entry["status"] == EntryStatus.PENDING.value
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == 0

        await svc.purchases.confirm_payment(entry["id"])
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == Decimal("100")

    async def test_rejected_payment_releases_supply(self, svc, make_account):
        acct = await make_account()
        entry = await svc.purchases.purchase(acct["account_id"], "280", payment_method="usdt_erc20")
        await svc.purchases.reject_payment(entry["id"])
        assert (await svc.supply.status())["tokens_issued"] == 0

    async def test_concurrent_purchases_near_cap(self, svc, make_account, config):
        # cap - 50 already issued; two 40-token purchases race
        await svc.supply.reserve(config.total_supply_cap - 50)
        a = await make_account(cash="112")
        b = await make_account(cash="112")
        results = await asyncio.gather(
            svc.purchases.purchase(a["account_id"], "112"),
            svc.purchases.purchase(b["account_id"], "112"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, SupplyExceeded) for r in results) == 1
        assert (await svc.supply.status())["tokens_available"] == Decimal("10")

        loser = a if isinstance(results[0], SupplyExceeded) else b
        after = await svc.ledger.get_account(loser["account_id"])
        assert after["cash_balance"] == Decimal("112")
        assert after["total_tokens"] == 0

    async def test_convert_to_cash(self, svc, make_account):
        await svc.pricing.set_today("3.00")
        acct = await make_account(tokens="10")
        entry = await svc.purchases.convert_to_cash(acct["account_id"], "10")
        assert entry["kind"] == EntryKind.SALE.value
        assert entry["cash_amount"] == Decimal("30")

    async def test_convert_below_minimum(self, svc, make_account):
        acct = await make_account(tokens="10")
        with pytest.raises(BelowMinimum):
            await svc.purchases.convert_to_cash(acct["account_id"], "0.5")

    async def test_manual_deposit(self, svc, make_account):
        acct = await make_account(active=False)
        entry = await svc.purchases.manual_deposit(acct["account_id"], "75", note="wire", admin_id="_admin")
        assert entry["description"] == "wire"
        assert (await svc.ledger.get_account(acct["account_id"]))["cash_balance"] == Decimal("75")


# ── Referrals ─────────────────────────────────────────────────────────────

class TestReferrals:

    async def test_default_rate(self, svc):
        assert await svc.referrals.get_commission_rate() == Decimal("5.0")

    async def test_set_rate(self, svc):
        assert await svc.referrals.set_commission_rate("7.5", updated_by="_admin") == Decimal("7.5")
        assert await svc.referrals.get_commission_rate() == Decimal("7.5")

    @pytest.mark.parametrize("rate", ["-1", "100.01", "abc"])
    async def test_rejects_bad_rate(self, svc, rate):
        with pytest.raises(InvalidCommissionRate):
            await svc.referrals.set_commission_rate(rate)

    async def test_first_purchase_pays_commission_once(self, svc, make_account):
        referrer = await make_account()
        referred = await make_account(cash="1000", referral_code=referrer["referral_code"])
        assert referred["referred_by"] == referrer["referral_code"]

        await svc.purchases.purchase(referred["account_id"], "100")
        await svc.purchases.purchase(referred["account_id"], "200")

        commissions = await svc.referrals.list_commissions(referrer_id=referrer["account_id"])
        assert len(commissions) == 1
        assert commissions[0]["amount"] == Decimal("5")
        assert commissions[0]["status"] == CommissionStatus.PAID.value

        after = await svc.ledger.get_account(referrer["account_id"])
        assert after["cash_balance"] == Decimal("5")
        assert after["referral_earnings"] == Decimal("5")
        assert len(svc.notifier.of_type(EventType.COMMISSION_PAID)) == 1

    async def test_commission_entry_written(self, svc, make_account):
        referrer = await make_account()
        referred = await make_account(cash="100", referral_code=referrer["referral_code"])
        await svc.purchases.purchase(referred["account_id"], "100")
        kinds = [e["kind"] for e in await svc.ledger.history(referrer["account_id"])]
        assert kinds == [EntryKind.REFERRAL_COMMISSION.value]

    async def test_no_referrer_no_commission(self, svc, make_account):
        acct = await make_account(cash="100")
        assert await svc.referrals.on_first_qualifying_purchase(acct["account_id"], "100") is None

    async def test_unknown_referral_code_is_ignored(self, svc, make_account):
        acct = await make_account(referral_code="NOPE1234")
        assert acct["referred_by"] is None

    async def test_zero_rate_closes_the_pair(self, svc, make_account):
        await svc.referrals.set_commission_rate("0")
        referrer = await make_account()
        referred = await make_account(cash="200", referral_code=referrer["referral_code"])
        await svc.purchases.purchase(referred["account_id"], "100")
        [record] = await svc.referrals.list_commissions()
        assert record["status"] == "paid"
        assert record["amount"] == 0

        # A later purchase is not the first qualifying one, whatever the rate is by then
        await svc.referrals.set_commission_rate("10")
        await svc.purchases.purchase(referred["account_id"], "100")
        assert len(await svc.referrals.list_commissions()) == 1
        acct = await svc.ledger.get_account(referrer["account_id"])
        assert acct["referral_earnings"] == 0
        assert acct["cash_balance"] == 0
        assert (await svc.referrals.stats())["commissions_paid"] == 0

    async def test_concurrent_hooks_pay_once(self, svc, make_account):
        referrer = await make_account()
        referred = await make_account(referral_code=referrer["referral_code"])
        await asyncio.gather(
            svc.referrals.on_first_qualifying_purchase(referred["account_id"], "100"),
            svc.referrals.on_first_qualifying_purchase(referred["account_id"], "100"),
        )
        stats = await svc.referrals.stats()
        assert stats["commissions_paid"] == 1
        assert (await svc.ledger.get_account(referrer["account_id"]))["referral_earnings"] == Decimal("5")

    async def test_commission_uses_rate_at_payment_time(self, svc, make_account):
        referrer = await make_account()
        referred = await make_account(cash="200", referral_code=referrer["referral_code"])
        await svc.referrals.set_commission_rate("10")
        await svc.purchases.purchase(referred["account_id"], "200")
        [record] = await svc.referrals.list_commissions()
        assert record["percentage"] == Decimal("10")
        assert record["amount"] == Decimal("20")
