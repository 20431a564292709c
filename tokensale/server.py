"""
server.py - Token ledger server entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Ledger services (accounts, pricing, supply, purchases, staking,
   withdrawals, referrals, chain reconciliation)
 - Notification dispatcher with logging and WebSocket sinks
 - Transfer feed consumer (webhook queue, optionally polling the simulator)
 - Staking maturity loop
 - REST + WebSocket API (FastAPI on uvicorn, port 8080)

Usage:
    python -m tokensale.server [--api-port 8080] [--db-path data/ledger.db]
"""

import argparse
import asyncio
import logging
import os
from decimal import Decimal
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tokensale.account import AccountService
from tokensale.auth import AuthService
from tokensale.chain_simulator import ChainSimulator
from tokensale.clock import Clock
from tokensale.config import DEFAULT_ADMIN_KEY, LedgerConfig
from tokensale.errors import LedgerError
from tokensale.feed import FeedConsumer, PollingFeed, QueueFeed
from tokensale.ledger import AccountLedger
from tokensale.notifications import LoggingSink, NotificationDispatcher
from tokensale.pricing import PriceOracle
from tokensale.purchases import PurchaseService
from tokensale.reconciler import ChainReconciler
from tokensale.referrals import ReferralCommissionEngine
from tokensale.routers import register_all_routers
from tokensale.staking import StakingEngine
from tokensale.storage import StorageManager
from tokensale.supply import SupplyLedger
from tokensale.withdrawals import WithdrawalLifecycle
from tokensale.ws import EventStream

logger = logging.getLogger("server")


def install_error_handlers(app: FastAPI):
    """Map domain errors to HTTP responses carrying the error's class name."""

    @app.exception_handler(LedgerError)
    async def ledger_error(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "code": "ValueError"})


# ---------------------------------------------------------------------------
# Ledger server
# ---------------------------------------------------------------------------

class LedgerServer:
    """Single-process ledger server combining storage, services, feeds and the REST API."""

    def __init__(self, config: Optional[LedgerConfig] = None, api_port: int = 8080,
                 db_path: str = "data/ledger.db", clock: Optional[Clock] = None,
                 enable_chain: bool = False, poll_chain: bool = False, poll_interval: float = 5.0):
        self.config = config or LedgerConfig()
        self.api_port = api_port
        self.db_path = db_path
        self.clock = clock or Clock()
        self._poll_chain = poll_chain
        self._poll_interval = poll_interval

        # Storage + services are initialized async in start()
        self.storage: Optional[StorageManager] = None
        self.supply: Optional[SupplyLedger] = None
        self.pricing: Optional[PriceOracle] = None
        self.ledger: Optional[AccountLedger] = None
        self.accounts: Optional[AccountService] = None
        self.referrals: Optional[ReferralCommissionEngine] = None
        self.purchases: Optional[PurchaseService] = None
        self.staking: Optional[StakingEngine] = None
        self.withdrawals: Optional[WithdrawalLifecycle] = None
        self.reconciler: Optional[ChainReconciler] = None
        self.auth: Optional[AuthService] = None

        # Outbound events
        self.notifier = NotificationDispatcher([LoggingSink()])
        self.event_stream: Optional[EventStream] = None

        # Inbound transfers
        self.queue_feed: Optional[QueueFeed] = None
        self.consumer: Optional[FeedConsumer] = None
        self.poller: Optional[FeedConsumer] = None

        self._tasks: List[asyncio.Task] = []
        self._uvicorn_server: Optional[uvicorn.Server] = None

        # Chain simulator (embedded, source for the polling feed); off unless asked for
        self.chain: Optional[ChainSimulator] = None

        # FastAPI app
        self.app = FastAPI(title="Token Ledger", version="0.1.0")
        self.app.state.server = self
        register_all_routers(self.app)
        install_error_handlers(self.app)

        if enable_chain:
            self.chain = ChainSimulator()
            self.chain.register_routes(self.app)
            logger.info("Chain simulator embedded on ledger server")

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()
        self._wire(self.storage)
        await self._setup_defaults()
        logger.info("Services initialized (db=%s)", self.db_path)

    def _wire(self, storage: StorageManager):
        cfg, clock, db = self.config, self.clock, storage.db

        self.supply = SupplyLedger(db, storage.supply, cfg)
        self.pricing = PriceOracle(db, storage.prices, cfg, clock)
        self.ledger = AccountLedger(
            db, storage.accounts, storage.entries, storage.referrals, storage.withdrawals,
            self.supply, notifier=self.notifier,
        )
        self.accounts = AccountService(db, storage.accounts, storage.entries)
        self.referrals = ReferralCommissionEngine(
            db, storage.accounts, storage.referrals, storage.settings, self.ledger, cfg, clock,
        )
        self.purchases = PurchaseService(db, storage.accounts, self.ledger, self.pricing, self.referrals, cfg)
        self.staking = StakingEngine(
            db, storage.accounts, storage.positions, storage.settings, self.ledger, cfg, clock,
        )
        self.withdrawals = WithdrawalLifecycle(
            db, storage.accounts, storage.withdrawals, self.ledger, cfg, clock, notifier=self.notifier,
        )
        self.reconciler = ChainReconciler(
            db, storage.accounts, storage.entries, storage.flagged, storage.chain_transfers,
            self.ledger, self.pricing, cfg, notifier=self.notifier,
        )
        self.auth = AuthService(
            db, storage.accounts, cfg.admin_key, jwt_secret=cfg.jwt_secret, feed_key=cfg.feed_key,
        )

        self.event_stream = EventStream(snapshot=self.status)
        self.notifier.add_sink(self.event_stream)

        self.queue_feed = QueueFeed()
        self.consumer = FeedConsumer(self.reconciler, self.queue_feed)
        if self._poll_chain and self.chain is not None:
            self.poller = FeedConsumer(self.reconciler, PollingFeed(self.chain.fetch_since, self._poll_interval))

    async def _setup_defaults(self):
        await self.supply.setup_defaults()
        await self.referrals.setup_defaults()
        await self.staking.setup_defaults()
        if self.config.admin_key == DEFAULT_ADMIN_KEY:
            logger.warning("Using the default admin key; pass --admin-key in production")

    # -------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------

    async def status(self) -> dict:
        async with self.storage.db.read():
            open_flags = await self.storage.flagged.count_open()
        return {
            "price": await self.pricing.current_price(),
            "supply": await self.supply.status(),
            "accounts": await self.accounts.totals(),
            "staking": await self.staking.stats(),
            "referrals": await self.referrals.stats(),
            "open_flagged_transfers": open_flags,
            "feed": self.consumer.stats() if self.consumer else {},
            "notifications": {
                "delivered": self.notifier.delivered,
                "dropped": self.notifier.dropped,
                "failed": self.notifier.failed,
            },
        }

    # -------------------------------------------------------------------
    # Staking maturity loop
    # -------------------------------------------------------------------

    async def _maturity_loop(self):
        """Periodically mature staking positions whose lock has ended."""
        while True:
            try:
                await self.staking.mature_all()
            except Exception:
                logger.exception("Error in maturity loop")
            await asyncio.sleep(self.config.maturity_interval_sec)

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    def start_background(self):
        """Start the dispatcher, feed consumers and maturity loop."""
        self.notifier.start()
        self.consumer.start()
        if self.poller is not None:
            self.poller.start()
        self._tasks.append(asyncio.create_task(self._maturity_loop()))

    async def stop_background(self):
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self.poller is not None:
            await self.poller.stop()
        if self.consumer is not None:
            await self.consumer.stop()
        await self.notifier.stop()

    async def start(self):
        """Start storage, background tasks, and API server."""
        await self._init_services()
        self.start_background()

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        try:
            await self._uvicorn_server.serve()
        finally:
            await self.stop()

    async def stop(self):
        """Stop background tasks, the API server and storage."""
        await self.stop_background()
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True
        if self.storage:
            await self.storage.close()


def build_server(argv: Optional[List[str]] = None) -> LedgerServer:
    """Parse CLI arguments into a configured, not yet started, LedgerServer."""
    parser = argparse.ArgumentParser(description="Token Ledger & Reconciliation Server")
    parser.add_argument("--api-port", type=int, default=8080, help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default="data/ledger.db", help="SQLite database path (default: data/ledger.db)")
    parser.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY, help="Admin API key")
    parser.add_argument("--jwt-secret", default="", help="JWT signing secret (default: random per start)")
    parser.add_argument("--feed-key", default="", help="Key the chain watcher presents as X-Feed-Key")
    parser.add_argument("--company-wallet", default=None, help="Company USDT wallet address")
    parser.add_argument("--supply-cap", default=None, help="Total token supply cap")
    parser.add_argument("--fallback-price", default=None, help="Token price when none has been set")
    parser.add_argument("--suspicious-threshold", default=None, help="Transfers above this are escalated")
    parser.add_argument("--maturity-interval", type=float, default=3600.0,
                        help="Seconds between staking maturity runs (default: 3600)")
    parser.add_argument("--chain", action="store_true",
                        help="Embed the chain simulator (development only; its routes are unauthenticated)")
    parser.add_argument("--poll-chain", action="store_true",
                        help="Poll the embedded chain simulator for transfers (implies --chain)")
    args = parser.parse_args(argv)

    config = LedgerConfig(
        admin_key=args.admin_key,
        feed_key=args.feed_key,
        maturity_interval_sec=args.maturity_interval,
    )
    if args.jwt_secret:
        config.jwt_secret = args.jwt_secret
    if args.company_wallet:
        config.company_wallet = args.company_wallet
    if args.supply_cap:
        config.total_supply_cap = Decimal(args.supply_cap)
    if args.fallback_price:
        config.fallback_price = Decimal(args.fallback_price)
    if args.suspicious_threshold:
        config.suspicious_threshold = Decimal(args.suspicious_threshold)

    return LedgerServer(
        config=config, api_port=args.api_port, db_path=args.db_path,
        enable_chain=args.chain or args.poll_chain, poll_chain=args.poll_chain,
    )


def main(argv: Optional[List[str]] = None):
    """CLI entry point for the ledger server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )
    server = build_server(argv)

    logger.info("=" * 60)
    logger.info("  Token Ledger Server")
    logger.info("  REST API:       http://localhost:%d", server.api_port)
    logger.info("  Events:         ws://localhost:%d/ws/events (admin)", server.api_port)
    logger.info("  Database:       %s", server.db_path)
    logger.info("  Company wallet: %s", server.config.company_wallet)
    logger.info("  Chain sim:      %s", "enabled" if server.chain is not None else "disabled")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
