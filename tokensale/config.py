"""
config.py - Engine configuration.

One LedgerConfig is built at startup (from CLI flags in server.main) and
handed to every engine. Admin-tunable values (commission rate, staking APY)
are only *seeded* from here; their live values sit in the settings table.
"""

import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Tuple

DEFAULT_COMPANY_WALLET = "0x7E874A697007965c6A3DdB1702828A764E7a91c3"
DEFAULT_ADMIN_KEY = "admin-test-key-do-not-use-in-production"

CASH_BALANCE_METHOD = "cash_balance"
PAYMENT_METHODS = ("cash_balance", "usdt_erc20", "usdt_trc20", "usdt_bep20")
WITHDRAWAL_NETWORKS = ("ERC20", "BEP20", "TRC20")
EVM_NETWORKS = ("ERC20", "BEP20")


@dataclass
class LedgerConfig:
    # Supply and pricing
    total_supply_cap: Decimal = Decimal("50000000")
    fallback_price: Decimal = Decimal("2.80")

    # Reconciliation
    company_wallet: str = DEFAULT_COMPANY_WALLET
    suspicious_threshold: Decimal = Decimal("10000")

    # Minimums
    minimum_purchase: Decimal = Decimal("10")
    minimum_token_withdrawal: Decimal = Decimal("1")
    minimum_cash_withdrawal: Decimal = Decimal("10")
    minimum_conversion: Decimal = Decimal("1")

    # Withdrawal lock periods, per class
    token_withdrawal_lock_days: int = 1095
    cash_withdrawal_lock_days: int = 0

    # Staking
    default_staking_apy: Decimal = Decimal("12.5")
    default_lock_years: int = 3
    min_lock_years: int = 1
    max_lock_years: int = 5
    early_unstake_penalty_pct: Decimal = Decimal("10")
    maturity_interval_sec: float = 3600.0

    # Referrals
    default_commission_rate: Decimal = Decimal("5.0")

    # Secrets
    admin_key: str = DEFAULT_ADMIN_KEY
    jwt_secret: str = field(default_factory=lambda: secrets.token_hex(32))
    feed_key: str = ""

    payment_methods: Tuple[str, ...] = PAYMENT_METHODS
    withdrawal_networks: Tuple[str, ...] = WITHDRAWAL_NETWORKS

    def __post_init__(self):
        if self.total_supply_cap <= 0:
            raise ValueError("total_supply_cap must be positive")
        if self.fallback_price <= 0:
            raise ValueError("fallback_price must be positive")
        if not 1 <= self.min_lock_years <= self.default_lock_years <= self.max_lock_years:
            raise ValueError("lock years must satisfy min <= default <= max")
        if not 0 <= self.early_unstake_penalty_pct <= 100:
            raise ValueError("early_unstake_penalty_pct must be within 0-100")
