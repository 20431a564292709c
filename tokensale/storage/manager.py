import logging
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .accounts import AccountRepo
from .database import Database
from .flagged import ChainTransferRepo, FlaggedTransferRepo
from .ledger_entries import LedgerEntryRepo
from .prices import PriceRepo
from .referrals import ReferralRepo
from .settings import SettingsRepo
from .staking import StakingRepo
from .supply import SupplyRepo
from .withdrawals import WithdrawalRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "ledger.db"):
        self.db_path = db_path
        self.db: Optional[Database] = None
        self.accounts: Optional[AccountRepo] = None
        self.entries: Optional[LedgerEntryRepo] = None
        self.prices: Optional[PriceRepo] = None
        self.supply: Optional[SupplyRepo] = None
        self.positions: Optional[StakingRepo] = None
        self.withdrawals: Optional[WithdrawalRepo] = None
        self.referrals: Optional[ReferralRepo] = None
        self.settings: Optional[SettingsRepo] = None
        self.flagged: Optional[FlaggedTransferRepo] = None
        self.chain_transfers: Optional[ChainTransferRepo] = None

    async def initialize(self):
        # Autocommit mode: Database.transaction() issues BEGIN IMMEDIATE itself
        conn = await aiosqlite.connect(self.db_path, timeout=30, isolation_level=None)
        if self.db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await run_migrations(conn, logger)
        self.attach(Database(conn))
        logger.info("Storage initialized: %s", self.db_path)

    def attach(self, db: Database):
        self.db = db
        self.accounts = AccountRepo(db)
        self.entries = LedgerEntryRepo(db)
        self.prices = PriceRepo(db)
        self.supply = SupplyRepo(db)
        self.positions = StakingRepo(db)
        self.withdrawals = WithdrawalRepo(db)
        self.referrals = ReferralRepo(db)
        self.settings = SettingsRepo(db)
        self.flagged = FlaggedTransferRepo(db)
        self.chain_transfers = ChainTransferRepo(db)

    async def close(self):
        if self.db:
            await self.db.close()
            self.db = None
            logger.info("Storage closed")
