"""
test_reconciler.py - ChainReconciler against the ledger.

The feed is at-least-once and unordered, so every outcome must be stable
under redelivery.
"""

import asyncio
from decimal import Decimal

import pytest

from tokensale.errors import RecordNotFound
from tokensale.notifications import EventType
from tokensale.reconciler import ChainTransfer, TransferOutcome
from tokensale.states import FlagStatus, Severity

pytestmark = pytest.mark.asyncio

STRANGER = "0x" + "77" * 20
OUTSIDER = "0x" + "66" * 20


def flagged_events(svc):
    return svc.notifier.of_type(EventType.SUSPICIOUS_TRANSFER_FLAGGED)


class TestChainTransfer:

    async def test_from_dict_hex_value(self):
        transfer = ChainTransfer.from_dict({
            "hash": "0xaa", "from": STRANGER, "to": OUTSIDER,
            "value": hex(280_000_000), "blockNumber": 7,
        })
        assert transfer.value == 280_000_000
        assert transfer.amount == Decimal("280")
        assert transfer.block_number == 7
        assert transfer.status == "success"

    async def test_from_dict_requires_hash(self):
        with pytest.raises(ValueError):
            ChainTransfer.from_dict({"from": STRANGER, "to": OUTSIDER, "value": "1"})

    async def test_round_trip_keys(self):
        transfer = ChainTransfer("0xbb", STRANGER, OUTSIDER, 5, block_number=3)
        assert ChainTransfer.from_dict(transfer.to_dict()) == transfer


class TestDeposits:

    async def test_deposit_credits_tokens(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(acct["wallet_address"], usdt="280")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.PROCESSED

        after = await svc.ledger.get_account(acct["account_id"])
        assert after["available_tokens"] == Decimal("100")
        entry = await svc.ledger.find_by_external_ref(transfer.tx_hash)
        assert entry["payment_method"] == "usdt_transfer"
        assert entry["cash_amount"] == Decimal("280")

    async def test_wallet_match_ignores_case(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(acct["wallet_address"].lower(), to_address=svc.config.company_wallet.lower())
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.PROCESSED

    async def test_double_delivery_credits_once(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(acct["wallet_address"], usdt="280")
        first = await svc.reconciler.handle_transfer(transfer)
        second = await svc.reconciler.handle_transfer(transfer)
        assert first is second is TransferOutcome.PROCESSED
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == Decimal("100")
        assert len(await svc.ledger.history(acct["account_id"])) == 1

    async def test_concurrent_delivery_credits_once(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(acct["wallet_address"], usdt="280")
        outcomes = await asyncio.gather(*(svc.reconciler.handle_transfer(transfer) for _ in range(5)))
        assert set(outcomes) == {TransferOutcome.PROCESSED}
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == Decimal("100")

    async def test_uses_price_at_processing_time(self, svc, make_account, make_transfer):
        acct = await make_account()
        await svc.pricing.set_today("4.00")
        await svc.reconciler.handle_transfer(make_transfer(acct["wallet_address"], usdt="100"))
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == Decimal("25")


class TestIgnored:

    async def test_unrelated_transfer(self, svc, make_transfer):
        transfer = make_transfer(STRANGER, to_address=OUTSIDER)
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.IGNORED

    async def test_failed_on_chain(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(acct["wallet_address"], status="failed")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.IGNORED
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == 0

    async def test_self_transfer(self, svc, make_transfer):
        company = svc.config.company_wallet
        transfer = make_transfer(company, to_address=company)
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.IGNORED


class TestFlagged:

    async def test_unknown_sender(self, svc, make_transfer):
        transfer = make_transfer(STRANGER, usdt="50")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED
        flag = await svc.reconciler.get_flagged(transfer.tx_hash)
        assert flag["severity"] == Severity.MEDIUM.value
        assert flag["direction"] == "deposit"
        assert flag["account_id"] is None

    async def test_unknown_sender_above_threshold_is_critical(self, svc, make_transfer):
        transfer = make_transfer(STRANGER, usdt="10000.01")
        await svc.reconciler.handle_transfer(transfer)
        assert (await svc.reconciler.get_flagged(transfer.tx_hash))["severity"] == Severity.CRITICAL.value

    async def test_inactive_account_escalates_once(self, svc, make_account, make_transfer):
        acct = await make_account(active=False)
        transfer = make_transfer(acct["wallet_address"], usdt="500")
        svc.notifier.events.clear()

        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED

        events = flagged_events(svc)
        assert len(events) == 1
        assert events[0].account_id == acct["account_id"]
        assert events[0].severity is Severity.MEDIUM
        assert (await svc.ledger.get_account(acct["account_id"]))["total_tokens"] == 0
        assert len(await svc.reconciler.list_flagged()) == 1

    async def test_supply_exhausted_flags_without_credit(self, svc, make_account, make_transfer, config):
        acct = await make_account()
        await svc.supply.reserve(config.total_supply_cap - 10)
        transfer = make_transfer(acct["wallet_address"], usdt="280")

        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED
        assert await svc.ledger.find_by_external_ref(transfer.tx_hash) is None
        flag = await svc.reconciler.get_flagged(transfer.tx_hash)
        assert flag["severity"] == Severity.HIGH.value
        assert flag["account_id"] == acct["account_id"]

    async def test_dust_is_low_severity(self, svc, make_account, make_transfer):
        acct = await make_account()
        await svc.pricing.set_today("2.80")
        transfer = make_transfer(acct["wallet_address"], usdt="0.000001")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED
        assert (await svc.reconciler.get_flagged(transfer.tx_hash))["severity"] == Severity.LOW.value

    async def test_resolve(self, svc, make_transfer):
        transfer = make_transfer(STRANGER)
        await svc.reconciler.handle_transfer(transfer)
        resolved = await svc.reconciler.resolve_flagged(transfer.tx_hash, "_admin", "refunded")
        assert resolved["status"] == FlagStatus.RESOLVED.value
        assert resolved["note"] == "refunded"
        assert await svc.reconciler.list_flagged() == []
        # Still known, so a redelivery stays flagged
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED

    async def test_resolve_unknown(self, svc):
        with pytest.raises(RecordNotFound):
            await svc.reconciler.resolve_flagged("0xnope")


class TestOutgoing:

    async def test_outgoing_to_known_account_is_observed(self, svc, make_account, make_transfer):
        acct = await make_account()
        transfer = make_transfer(svc.config.company_wallet, to_address=acct["wallet_address"], usdt="40")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.PROCESSED
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.PROCESSED
        assert len(svc.notifier.of_type(EventType.TRANSFER_OBSERVED)) == 1
        # Observing a payout never moves balances
        assert (await svc.ledger.get_account(acct["account_id"]))["cash_balance"] == 0

    async def test_outgoing_to_unknown_is_high(self, svc, make_transfer):
        transfer = make_transfer(svc.config.company_wallet, to_address=STRANGER, usdt="40")
        assert await svc.reconciler.handle_transfer(transfer) is TransferOutcome.FLAGGED
        flag = await svc.reconciler.get_flagged(transfer.tx_hash)
        assert flag["severity"] == Severity.HIGH.value
        assert flag["direction"] == "withdrawal"
