"""
Shared fixtures for the ledger integration tests.

Provides:
 - A LedgerServer wired on an in-memory database with background tasks running
 - An httpx AsyncClient talking to its FastAPI app in-process
 - Helpers to register/activate/fund accounts through the REST API
 - Wallet linking the way a client does it: nonce, EIP-191 signature, link
"""

from decimal import Decimal
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct

from tokensale.clock import FrozenClock
from tokensale.config import LedgerConfig
from tokensale.server import LedgerServer

ADMIN_KEY = "integration-admin-key"
FEED_KEY = "integration-feed-key"
ADMIN = {"X-API-Key": ADMIN_KEY}
FEED = {"X-Feed-Key": FEED_KEY}


def ledger_config(**overrides) -> LedgerConfig:
    values = dict(
        total_supply_cap=Decimal("1000000"),
        fallback_price=Decimal("2.80"),
        admin_key=ADMIN_KEY,
        feed_key=FEED_KEY,
        jwt_secret="integration-jwt-secret",
        maturity_interval_sec=3600.0,
    )
    values.update(overrides)
    return LedgerConfig(**values)


async def start_server(db_path: str = ":memory:", config: Optional[LedgerConfig] = None,
                       clock: Optional[FrozenClock] = None) -> LedgerServer:
    srv = LedgerServer(config=config or ledger_config(), db_path=db_path, clock=clock or FrozenClock())
    await srv._init_services()
    srv.start_background()
    return srv


async def stop_server(srv: LedgerServer):
    await srv.stop_background()
    await srv.storage.close()


def client_for(srv: LedgerServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=srv.app), base_url="http://test")


async def link_wallet(client: httpx.AsyncClient, acct: dict, wallet=None) -> dict:
    """Sign a server nonce with `wallet` (a fresh key pair by default) and link it to `acct`."""
    wallet = wallet or EthAccount.create()
    nonce = (await client.get("/api/auth/nonce", params={"address": wallet.address})).json()
    signed = EthAccount.sign_message(encode_defunct(text=nonce["message"]), private_key=wallet.key)
    resp = await client.post(f"/api/accounts/{acct['account_id']}/wallet", headers=acct["headers"], json={
        "address": wallet.address,
        "signature": "0x" + bytes(signed.signature).hex(),
        "nonce": nonce["nonce"],
    })
    assert resp.status_code == 200, resp.text
    acct["wallet_address"] = resp.json()["wallet_address"]
    acct["wallet"] = wallet
    return acct


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def server(clock):
    srv = await start_server(clock=clock)
    yield srv
    await stop_server(srv)


@pytest_asyncio.fixture
async def client(server):
    async with client_for(server) as c:
        yield c


@pytest.fixture
def register(client):
    """Factory: register through the API, link a signed wallet, optionally activate and fund."""
    counter = {"n": 0}

    async def _register(activate: bool = True, cash: Optional[str] = None,
                        referral_code: Optional[str] = None, wallet=None, link: bool = True) -> dict:
        counter["n"] += 1
        n = counter["n"]
        body = {"email": f"member{n}@example.com"}
        if referral_code:
            body["referral_code"] = referral_code
        resp = await client.post("/api/auth/register", json=body)
        assert resp.status_code == 200, resp.text
        acct = resp.json()
        acct["headers"] = {"X-API-Key": acct["api_key"]}
        if link:
            await link_wallet(client, acct, wallet)
        if activate:
            resp = await client.post(f"/api/admin/accounts/{acct['account_id']}/activate", headers=ADMIN)
            assert resp.status_code == 200, resp.text
        if cash:
            resp = await client.post(
                f"/api/admin/accounts/{acct['account_id']}/deposit",
                json={"cash_amount": cash, "note": "test funding"}, headers=ADMIN,
            )
            assert resp.status_code == 200, resp.text
        return acct

    return _register


@pytest_asyncio.fixture
async def spawn():
    """Factory: start extra servers (e.g. on a shared file); all are stopped at teardown."""
    started = []

    async def _spawn(db_path: str, **config_overrides) -> LedgerServer:
        srv = await start_server(db_path, config=ledger_config(**config_overrides))
        started.append(srv)
        return srv

    yield _spawn
    for srv in reversed(started):
        await stop_server(srv)


@pytest.fixture
def http():
    return client_for


@pytest.fixture
def link():
    return link_wallet
