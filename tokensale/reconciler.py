"""
reconciler.py - Chain transfer reconciler.

Consumes USDT transfers touching the company wallet and applies each one to
the ledger exactly once. The feed is at-least-once and unordered, so every
transfer is checked against the ledger (external_ref), the withdrawal audit
table and the flagged queue inside the same transaction that would record
it.

Outcomes:
  - IGNORED:   not ours, not successful on chain, or a wallet-to-itself move
  - PROCESSED: credited now, or already credited / observed earlier
  - FLAGGED:   unknown counterparty, inactive account, or not admissible;
               recorded in flagged_transfers and escalated once
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from tokensale.errors import RecordNotFound, SupplyExceeded, UnknownCounterparty
from tokensale.notifications import EventType, LedgerEvent
from tokensale.states import FlagStatus, Severity
from tokensale.units import from_micro, to_micro, tokens_for_cash

if TYPE_CHECKING:
    from tokensale.config import LedgerConfig
    from tokensale.ledger import AccountLedger
    from tokensale.notifications import NotificationPort
    from tokensale.pricing import PriceOracle
    from tokensale.storage import (
        AccountRepo,
        ChainTransferRepo,
        Database,
        FlaggedTransferRepo,
        LedgerEntryRepo,
    )

logger = logging.getLogger("reconciler")

SUCCESS = "success"
DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
CHAIN_PAYMENT_METHOD = "usdt_transfer"


class TransferOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    FLAGGED = "flagged"


@dataclass
class ChainTransfer:
    """One token transfer as delivered by the feed. value is in micro-units (USDT 6 decimals)."""

    tx_hash: str
    from_address: str
    to_address: str
    value: int
    block_number: int = 0
    timestamp: float = 0.0
    status: str = SUCCESS

    @classmethod
    def from_dict(cls, data: dict) -> "ChainTransfer":
        tx_hash = data.get("hash") or data.get("tx_hash") or ""
        if not tx_hash:
            raise ValueError("transfer has no hash")
        value = data.get("value", 0)
        if isinstance(value, str):
            value = int(value, 16) if value.lower().startswith("0x") else int(value)
        return cls(
            tx_hash=tx_hash,
            from_address=data.get("from") or data.get("from_address") or "",
            to_address=data.get("to") or data.get("to_address") or "",
            value=int(value),
            block_number=int(data.get("blockNumber", data.get("block_number", 0)) or 0),
            timestamp=float(data.get("timestamp", 0) or 0),
            status=str(data.get("status", SUCCESS)).lower(),
        )

    def to_dict(self) -> dict:
        return {
            "hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "status": self.status,
        }

    @property
    def amount(self) -> Decimal:
        return from_micro(self.value)


class ChainReconciler:
    """Matches chain transfers to accounts and drives the ledger."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        entry_repo: "LedgerEntryRepo",
        flagged_repo: "FlaggedTransferRepo",
        chain_transfer_repo: "ChainTransferRepo",
        ledger: "AccountLedger",
        pricing: "PriceOracle",
        config: "LedgerConfig",
        notifier: Optional["NotificationPort"] = None,
    ):
        self._db = db
        self._accounts = account_repo
        self._entries = entry_repo
        self._flagged = flagged_repo
        self._chain = chain_transfer_repo
        self._ledger = ledger
        self._pricing = pricing
        self._config = config
        self._notifier = notifier
        self._threshold = to_micro(config.suspicious_threshold)

    def _direction(self, transfer: ChainTransfer) -> Optional[str]:
        company = self._config.company_wallet.lower()
        incoming = transfer.to_address.lower() == company
        outgoing = transfer.from_address.lower() == company
        if incoming == outgoing:
            return None
        return DEPOSIT if incoming else WITHDRAWAL

    async def handle_transfer(self, transfer: ChainTransfer) -> TransferOutcome:
        direction = self._direction(transfer)
        if direction is None:
            logger.debug("Ignoring %s: does not move funds in or out of the company wallet", transfer.tx_hash)
            return TransferOutcome.IGNORED
        if transfer.status != SUCCESS:
            logger.info("Ignoring %s: chain status %s", transfer.tx_hash, transfer.status)
            return TransferOutcome.IGNORED

        try:
            async with self._db.transaction():
                return await self._apply(transfer, direction)
        except SupplyExceeded as exc:
            # The credit rolled back; record the transfer on its own
            return await self._flag(
                transfer, direction, f"supply exhausted ({exc.remaining} tokens left)",
                Severity.HIGH, account_id=await self._owner(transfer, direction),
            )

    async def _apply(self, transfer: ChainTransfer, direction: str) -> TransferOutcome:
        if await self._entries.get_by_external_ref(transfer.tx_hash) is not None:
            logger.info("Transfer %s already credited", transfer.tx_hash)
            return TransferOutcome.PROCESSED
        if await self._chain.get(transfer.tx_hash) is not None:
            logger.info("Transfer %s already observed", transfer.tx_hash)
            return TransferOutcome.PROCESSED
        if await self._flagged.get(transfer.tx_hash) is not None:
            logger.info("Transfer %s already flagged", transfer.tx_hash)
            return TransferOutcome.FLAGGED

        try:
            account = await self._resolve_account(transfer, direction)
        except UnknownCounterparty as exc:
            severity = self._unknown_severity(transfer, direction)
            return await self._flag(transfer, direction, str(exc), severity)

        if direction == WITHDRAWAL:
            return await self._observe_withdrawal(transfer, account)
        return await self._credit_deposit(transfer, account)

    async def _resolve_account(self, transfer: ChainTransfer, direction: str) -> dict:
        counterparty = transfer.from_address if direction == DEPOSIT else transfer.to_address
        account = await self._accounts.get_by_wallet(counterparty)
        if account is None:
            raise UnknownCounterparty(counterparty)
        return account

    async def _owner(self, transfer: ChainTransfer, direction: str) -> Optional[str]:
        try:
            async with self._db.read():
                account = await self._resolve_account(transfer, direction)
        except UnknownCounterparty:
            return None
        return account["account_id"]

    async def _credit_deposit(self, transfer: ChainTransfer, account: dict) -> TransferOutcome:
        account_id = account["account_id"]
        if not account["is_active"]:
            severity = Severity.HIGH if transfer.value > self._threshold else Severity.MEDIUM
            return await self._flag(transfer, DEPOSIT, f"account {account_id} is not active",
                                    severity, account_id=account_id)

        price = await self._pricing.current_price()
        tokens = tokens_for_cash(transfer.value, to_micro(price))
        if tokens <= 0:
            return await self._flag(transfer, DEPOSIT, f"${transfer.amount} buys no tokens at {price}",
                                    Severity.LOW, account_id=account_id)

        await self._ledger.credit_purchase(
            account_id, transfer.amount, from_micro(tokens), price,
            external_ref=transfer.tx_hash, payment_method=CHAIN_PAYMENT_METHOD,
            description=f"USDT deposit in block {transfer.block_number}",
        )
        return TransferOutcome.PROCESSED

    async def _observe_withdrawal(self, transfer: ChainTransfer, account: dict) -> TransferOutcome:
        account_id = account["account_id"]
        if await self._chain.insert(transfer.tx_hash, account_id, WITHDRAWAL, transfer.value,
                                    transfer.block_number):
            event = LedgerEvent(
                EventType.TRANSFER_OBSERVED, account_id, transfer.amount,
                f"Outgoing transfer of ${transfer.amount} to {transfer.to_address} confirmed",
                data={"tx_hash": transfer.tx_hash, "block_number": transfer.block_number},
            )
            self._after_commit(event, "Withdrawal confirmation %s observed for %s (%s)",
                               transfer.tx_hash, account_id, transfer.amount)
        return TransferOutcome.PROCESSED

    def _unknown_severity(self, transfer: ChainTransfer, direction: str) -> Severity:
        if transfer.value > self._threshold:
            return Severity.CRITICAL
        return Severity.MEDIUM if direction == DEPOSIT else Severity.HIGH

    async def _flag(self, transfer: ChainTransfer, direction: str, reason: str, severity: Severity,
                    account_id: Optional[str] = None) -> TransferOutcome:
        async with self._db.transaction():
            created = await self._flagged.insert(
                transfer.tx_hash, transfer.from_address, transfer.to_address, transfer.value,
                transfer.block_number, direction, reason, severity.value, account_id,
            )
            if created:
                event = LedgerEvent(
                    EventType.SUSPICIOUS_TRANSFER_FLAGGED, account_id, transfer.amount,
                    f"{direction.capitalize()} {transfer.tx_hash} flagged: {reason}",
                    severity=severity,
                    data={"tx_hash": transfer.tx_hash, "from": transfer.from_address,
                          "to": transfer.to_address, "direction": direction},
                )
                self._after_commit(event, "Flagged %s %s (%s, %s): %s", direction, transfer.tx_hash,
                                   transfer.amount, severity.value, reason, level=logging.WARNING)
        return TransferOutcome.FLAGGED

    def _after_commit(self, event: LedgerEvent, msg: str, *args, level: int = logging.INFO):
        def callback():
            logger.log(level, msg, *args)
            if self._notifier is not None:
                self._notifier.publish(event)
        self._db.after_commit(callback)

    # -------------------------------------------------------------------
    # Flagged queue
    # -------------------------------------------------------------------

    async def list_flagged(self, status: Optional[str] = FlagStatus.OPEN.value,
                           limit: Optional[int] = 100, offset: int = 0) -> List[dict]:
        if status is not None:
            status = FlagStatus(status).value
        async with self._db.read():
            return await self._flagged.list_all(status=status, limit=limit, offset=offset)

    async def get_flagged(self, tx_hash: str) -> dict:
        async with self._db.read():
            flag = await self._flagged.get(tx_hash)
        if flag is None:
            raise RecordNotFound(f"No flagged transfer {tx_hash}")
        return flag

    async def resolve_flagged(self, tx_hash: str, resolved_by: str = "", note: str = "") -> dict:
        async with self._db.transaction():
            flag = await self._flagged.get(tx_hash)
            if flag is None:
                raise RecordNotFound(f"No flagged transfer {tx_hash}")
            if flag["status"] == FlagStatus.OPEN.value:
                await self._flagged.resolve(tx_hash, resolved_by, note)
                flag = await self._flagged.get(tx_hash)
                logger.info("Flagged transfer %s resolved by %s", tx_hash, resolved_by or "-")
        return flag
