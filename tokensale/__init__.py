"""
Token Sale Ledger - Server Package

Authoritative ledger for a token sale: accounts, purchases, staking,
withdrawals, referral commissions and on-chain USDT reconciliation.
Includes SQLite storage, REST API, WebSocket events, and a chain simulator.
"""

__version__ = "0.1.0"

__all__ = [
    "account",
    "auth",
    "chain_simulator",
    "clock",
    "config",
    "errors",
    "feed",
    "ledger",
    "notifications",
    "pricing",
    "purchases",
    "reconciler",
    "referrals",
    "server",
    "staking",
    "states",
    "storage",
    "supply",
    "units",
    "withdrawals",
]
