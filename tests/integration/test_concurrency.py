"""
test_concurrency.py - Several ledger servers sharing one database file.

Each LedgerServer has its own connection; SQLite's write lock (BEGIN
IMMEDIATE) is the only thing serializing them.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

pytestmark = pytest.mark.asyncio

ADMIN = {"X-API-Key": "integration-admin-key"}
FEED = {"X-Feed-Key": "integration-feed-key"}


@pytest_asyncio.fixture
async def pair(tmp_path, spawn):
    db_path = str(tmp_path / "shared.db")
    first = await spawn(db_path, total_supply_cap=Decimal("150"))
    second = await spawn(db_path, total_supply_cap=Decimal("150"))
    return first, second


async def funded_account(client, link, n: int, cash: str) -> dict:
    resp = await client.post("/api/auth/register", json={"email": f"race{n}@example.com"})
    acct = resp.json()
    acct["headers"] = {"X-API-Key": acct["api_key"]}
    await link(client, acct)
    await client.post(f"/api/admin/accounts/{acct['account_id']}/activate", headers=ADMIN)
    await client.post(
        f"/api/admin/accounts/{acct['account_id']}/deposit", json={"cash_amount": cash}, headers=ADMIN,
    )
    return acct


class TestSharedDatabase:

    async def test_supply_cap_holds_across_servers(self, pair, http, link):
        first, second = pair
        async with http(first) as a, http(second) as b:
            alice = await funded_account(a, link, 1, "280")
            bob = await funded_account(a, link, 2, "280")

            results = await asyncio.gather(
                a.post("/api/purchase", json={"cash_amount": "280"}, headers=alice["headers"]),
                b.post("/api/purchase", json={"cash_amount": "280"}, headers=bob["headers"]),
            )
            codes = sorted(r.status_code for r in results)
            assert codes == [200, 409]
            loser = next(r for r in results if r.status_code == 409)
            assert loser.json()["code"] == "SupplyExceeded"

            supply = (await b.get("/api/supply")).json()
            assert Decimal(supply["tokens_issued"]) == Decimal("100")

            # The loser keeps their cash
            balances = []
            for acct in (alice, bob):
                resp = await a.get(f"/api/accounts/{acct['account_id']}/balance", headers=ADMIN)
                balances.append(Decimal(resp.json()["cash_balance"]))
            assert sorted(balances) == [Decimal("0"), Decimal("280")]

    async def test_same_transfer_on_both_servers(self, pair, http, link):
        first, second = pair
        async with http(first) as a, http(second) as b:
            acct = await funded_account(a, link, 3, "0.01")
            body = {
                "hash": "0x" + "ab" * 32, "from": acct["wallet_address"],
                "to": first.config.company_wallet, "value": "28000000", "blockNumber": 12,
            }
            results = await asyncio.gather(*(
                client.post("/api/chain/transfers", params={"wait": "true"}, json=body, headers=FEED)
                for client in (a, b, a, b)
            ))
            outcomes = {r.json()["results"][0]["outcome"] for r in results}
            assert outcomes == {"processed"}

            resp = await b.get(f"/api/accounts/{acct['account_id']}/balance", headers=ADMIN)
            assert Decimal(resp.json()["total_tokens"]) == Decimal("10")
