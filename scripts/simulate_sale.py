#!/usr/bin/env python3
"""
Drive a running ledger server with simulated buyers and chain deposits.

Registers buyers through the REST API, links a freshly generated wallet to
each one by signing the server nonce, activates them with the admin key,
then plays the chain watcher: every tick a random buyer (or, now and then,
a stranger) sends USDT to the company wallet and the transfer is posted to
/api/chain/transfers. Some deliveries are repeated on purpose, since the
real feed is at-least-once.

Usage:
    python scripts/simulate_sale.py --buyers 5 --api http://localhost:8080
"""

import argparse
import logging
import random
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional

import requests
from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct

logger = logging.getLogger("simulate")

DEFAULT_ADMIN_KEY = "admin-test-key-do-not-use-in-production"
DEFAULT_COMPANY_WALLET = "0x7E874A697007965c6A3DdB1702828A764E7a91c3"


def make_eth_address() -> str:
    return "0x" + secrets.token_hex(20)


@dataclass
class Buyer:
    account_id: str
    api_key: str
    wallet_address: str
    deposits: int = 0


class SaleSimulator:
    def __init__(self, api: str, admin_key: str, feed_key: str, company_wallet: str,
                 duplicate_rate: float = 0.2, stranger_rate: float = 0.1):
        self.api = api.rstrip("/")
        self.admin_headers = {"X-API-Key": admin_key}
        self.feed_headers = {"X-Feed-Key": feed_key or admin_key}
        self.company_wallet = company_wallet
        self.duplicate_rate = duplicate_rate
        self.stranger_rate = stranger_rate
        self.buyers: List[Buyer] = []
        self.block = 1
        self._sent: List[dict] = []

    def _post(self, path: str, headers: Optional[dict] = None, **kwargs) -> Optional[dict]:
        try:
            resp = requests.post(f"{self.api}{path}", headers=headers, timeout=10, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error("POST %s failed: %s", path, e)
            return None
        if resp.status_code >= 400:
            logger.warning("POST %s -> %d %s", path, resp.status_code, resp.text)
            return None
        return resp.json()

    def _link_wallet(self, account_id: str, api_key: str) -> Optional[dict]:
        wallet = EthAccount.create()
        try:
            nonce = requests.get(f"{self.api}/api/auth/nonce", params={"address": wallet.address},
                                 timeout=10).json()
        except requests.exceptions.RequestException as e:
            logger.error("Nonce request failed: %s", e)
            return None
        signed = EthAccount.sign_message(encode_defunct(text=nonce["message"]), private_key=wallet.key)
        return self._post(f"/api/accounts/{account_id}/wallet", headers={"X-API-Key": api_key}, json={
            "address": wallet.address,
            "signature": "0x" + bytes(signed.signature).hex(),
            "nonce": nonce["nonce"],
        })

    def register_buyers(self, count: int):
        for i in range(count):
            acct = self._post("/api/auth/register", json={"email": f"buyer{i}-{secrets.token_hex(3)}@example.com"})
            if acct is None:
                continue
            linked = self._link_wallet(acct["account_id"], acct["api_key"])
            if linked is None:
                continue
            self._post(f"/api/admin/accounts/{acct['account_id']}/activate", headers=self.admin_headers)
            self.buyers.append(Buyer(acct["account_id"], acct["api_key"], linked["wallet_address"]))
            logger.info("Registered %s (%s)", acct["account_id"], linked["wallet_address"])

    def _next_transfer(self) -> dict:
        if self.buyers and random.random() >= self.stranger_rate:
            buyer = random.choice(self.buyers)
            buyer.deposits += 1
            sender = buyer.wallet_address
        else:
            sender = make_eth_address()
        usdt = random.choice([28, 50, 100, 280, 1000])
        transfer = {
            "hash": "0x" + secrets.token_hex(32),
            "from": sender,
            "to": self.company_wallet,
            "value": str(usdt * 1_000_000),
            "blockNumber": self.block,
            "timestamp": time.time(),
            "status": "success",
        }
        self.block += 1
        return transfer

    def tick(self):
        if self._sent and random.random() < self.duplicate_rate:
            transfer = random.choice(self._sent)
            logger.info("Redelivering %s", transfer["hash"][:18])
        else:
            transfer = self._next_transfer()
            self._sent.append(transfer)
        result = self._post("/api/chain/transfers", headers=self.feed_headers,
                            params={"wait": "true"}, json=transfer)
        if result:
            outcome = result["results"][0]["outcome"]
            logger.info("%s %s USDT from %s -> %s", transfer["hash"][:18],
                        int(transfer["value"]) // 1_000_000, transfer["from"][:10], outcome)

    def print_status(self):
        try:
            status = requests.get(f"{self.api}/api/status", timeout=10).json()
        except requests.exceptions.RequestException as e:
            logger.error("Status request failed: %s", e)
            return
        logger.info(
            "Sale: price=%s issued=%s/%s | flagged=%d | feed=%s",
            status["price"], status["supply"]["tokens_issued"], status["supply"]["total_supply_cap"],
            status["open_flagged_transfers"], status["feed"].get("outcomes", {}),
        )

    def run(self, transfers: int, interval: float):
        for i in range(transfers):
            self.tick()
            if (i + 1) % 10 == 0:
                self.print_status()
            time.sleep(interval)
        self.print_status()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Simulated token sale traffic")
    parser.add_argument("--api", default="http://localhost:8080", help="Ledger server base URL")
    parser.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY, help="Admin API key")
    parser.add_argument("--feed-key", default="", help="X-Feed-Key (default: admin key)")
    parser.add_argument("--company-wallet", default=DEFAULT_COMPANY_WALLET, help="Company USDT wallet")
    parser.add_argument("--buyers", type=int, default=5, help="Number of simulated buyers")
    parser.add_argument("--transfers", type=int, default=50, help="Number of transfers to post")
    parser.add_argument("--interval", type=float, default=0.5, help="Seconds between transfers")
    args = parser.parse_args()

    sim = SaleSimulator(args.api, args.admin_key, args.feed_key, args.company_wallet)
    sim.register_buyers(args.buyers)
    logger.info("Starting sale: %d buyers, %d transfers -> %s", len(sim.buyers), args.transfers, args.api)
    try:
        sim.run(args.transfers, args.interval)
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
