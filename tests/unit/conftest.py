"""Shared fixtures for the ledger unit tests."""

from decimal import Decimal
from types import SimpleNamespace
from typing import List, Optional

import pytest
import pytest_asyncio

from tokensale.account import AccountService
from tokensale.clock import FrozenClock
from tokensale.config import DEFAULT_COMPANY_WALLET, LedgerConfig
from tokensale.ledger import AccountLedger
from tokensale.notifications import EventType, LedgerEvent
from tokensale.pricing import PriceOracle
from tokensale.purchases import PurchaseService
from tokensale.reconciler import ChainReconciler, ChainTransfer
from tokensale.referrals import ReferralCommissionEngine
from tokensale.staking import StakingEngine
from tokensale.storage import StorageManager
from tokensale.supply import SupplyLedger
from tokensale.units import to_micro
from tokensale.withdrawals import WithdrawalLifecycle

COMPANY_WALLET = DEFAULT_COMPANY_WALLET


# ── Helpers ─────────────────────────────────────────────────────────────────

def wallet(n: int) -> str:
    """Deterministic, valid EVM address."""
    return "0x" + f"{n:040x}"


class RecordingNotifier:
    """NotificationPort that keeps every published event."""

    def __init__(self):
        self.events: List[LedgerEvent] = []

    def publish(self, event: LedgerEvent):
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[LedgerEvent]:
        return [e for e in self.events if e.type is event_type]


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def config():
    return LedgerConfig(
        total_supply_cap=Decimal("1000000"),
        fallback_price=Decimal("2.80"),
        jwt_secret="unit-test-secret",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest_asyncio.fixture
async def svc(storage, config, clock, notifier):
    """Every engine wired on one in-memory database."""
    db = storage.db
    supply = SupplyLedger(db, storage.supply, config)
    pricing = PriceOracle(db, storage.prices, config, clock)
    ledger = AccountLedger(
        db, storage.accounts, storage.entries, storage.referrals, storage.withdrawals,
        supply, notifier=notifier,
    )
    referrals = ReferralCommissionEngine(
        db, storage.accounts, storage.referrals, storage.settings, ledger, config, clock,
    )
    ns = SimpleNamespace(
        storage=storage,
        db=db,
        config=config,
        clock=clock,
        notifier=notifier,
        supply=supply,
        pricing=pricing,
        ledger=ledger,
        accounts=AccountService(db, storage.accounts, storage.entries),
        referrals=referrals,
        purchases=PurchaseService(db, storage.accounts, ledger, pricing, referrals, config),
        staking=StakingEngine(
            db, storage.accounts, storage.positions, storage.settings, ledger, config, clock,
        ),
        withdrawals=WithdrawalLifecycle(
            db, storage.accounts, storage.withdrawals, ledger, config, clock, notifier=notifier,
        ),
        reconciler=ChainReconciler(
            db, storage.accounts, storage.entries, storage.flagged, storage.chain_transfers,
            ledger, pricing, config, notifier=notifier,
        ),
    )
    await supply.setup_defaults()
    await referrals.setup_defaults()
    await ns.staking.setup_defaults()
    return ns


@pytest.fixture
def make_account(svc):
    """Factory: register an account and optionally fund it."""
    counter = {"n": 0}

    async def _make(active: bool = True, tokens=None, cash=None, with_wallet: bool = True,
                    referral_code: Optional[str] = None) -> dict:
        counter["n"] += 1
        n = counter["n"]
        acct = await svc.accounts.register(
            email=f"user{n}@example.com",
            referral_code=referral_code,
            wallet_address=wallet(n) if with_wallet else "",
            account_id=f"acct-{n}",
            active=active,
        )
        if tokens:
            await svc.ledger.credit_purchase(acct["account_id"], Decimal("0"), tokens, Decimal("2.80"))
        if cash:
            await svc.ledger.credit_cash_deposit(acct["account_id"], cash)
        return await svc.ledger.get_account(acct["account_id"])

    return _make


@pytest.fixture
def make_transfer():
    """Factory: USDT transfer into the company wallet unless told otherwise."""
    counter = {"n": 0}

    def _make(from_address: str, to_address: str = COMPANY_WALLET, usdt="100",
              tx_hash: Optional[str] = None, status: str = "success", block: int = 1) -> ChainTransfer:
        counter["n"] += 1
        return ChainTransfer(
            tx_hash=tx_hash or "0x" + f"{counter['n']:064x}",
            from_address=from_address,
            to_address=to_address,
            value=to_micro(usdt),
            block_number=block,
            status=status,
        )

    return _make
