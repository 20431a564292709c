from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .database import Database
from .accounts import AccountRepo
from .ledger_entries import LedgerEntryRepo
from .prices import PriceRepo
from .supply import SupplyRepo
from .staking import StakingRepo
from .withdrawals import WithdrawalRepo
from .referrals import ReferralRepo
from .settings import SettingsRepo
from .flagged import ChainTransferRepo, FlaggedTransferRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "Database",
    "AccountRepo",
    "LedgerEntryRepo",
    "PriceRepo",
    "SupplyRepo",
    "StakingRepo",
    "WithdrawalRepo",
    "ReferralRepo",
    "SettingsRepo",
    "FlaggedTransferRepo",
    "ChainTransferRepo",
    "StorageManager",
]
