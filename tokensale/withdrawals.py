"""
withdrawals.py - Withdrawal lifecycle.

    Pending --approve--> Approved --(debit)--> Processing --complete--> Completed
    Pending --reject---> Rejected

A request cannot leave Pending until its lock period has elapsed
(requested_at + lock_period_days). Approval debits the account through
AccountLedger in the same transaction and moves straight on to Processing.
Re-issuing approve, reject or complete on a request already past that step
is a no-op.
"""

import logging
import re
import uuid
from typing import TYPE_CHECKING, List, Optional

from eth_utils import is_address, to_checksum_address

from tokensale.config import EVM_NETWORKS
from tokensale.errors import (
    AccountLocked,
    AccountNotFound,
    BelowMinimum,
    InsufficientAvailable,
    InvalidAddress,
    InvalidTransition,
    LedgerError,
    LockPeriodActive,
    RecordNotFound,
)
from tokensale.notifications import EventType, LedgerEvent
from tokensale.states import WithdrawalAsset, WithdrawalStatus, ensure_transition
from tokensale.units import to_decimal, to_micro

if TYPE_CHECKING:
    from tokensale.clock import Clock
    from tokensale.config import LedgerConfig
    from tokensale.ledger import AccountLedger
    from tokensale.notifications import NotificationPort
    from tokensale.storage import AccountRepo, Database, WithdrawalRepo

logger = logging.getLogger("withdrawals")

SECONDS_PER_DAY = 86400
_TRON_ADDRESS_RE = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")


def validate_destination(network: str, address: str) -> str:
    address = (address or "").strip()
    if network in EVM_NETWORKS:
        if not is_address(address):
            raise InvalidAddress(f"Not a valid {network} address: {address!r}")
        return to_checksum_address(address)
    if not _TRON_ADDRESS_RE.match(address):
        raise InvalidAddress(f"Not a valid {network} address: {address!r}")
    return address


def eligible_at(request: dict) -> float:
    """Epoch seconds from which an admin may act on the request."""
    return request["requested_at"] + request["lock_period_days"] * SECONDS_PER_DAY


class WithdrawalLifecycle:
    """Withdrawal requests and their admin decisions."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        withdrawal_repo: "WithdrawalRepo",
        ledger: "AccountLedger",
        config: "LedgerConfig",
        clock: "Clock",
        notifier: Optional["NotificationPort"] = None,
    ):
        self._db = db
        self._accounts = account_repo
        self._withdrawals = withdrawal_repo
        self._ledger = ledger
        self._config = config
        self._clock = clock
        self._notifier = notifier

    def _class_rules(self, asset: WithdrawalAsset):
        if asset is WithdrawalAsset.TOKEN:
            return self._config.minimum_token_withdrawal, self._config.token_withdrawal_lock_days
        return self._config.minimum_cash_withdrawal, self._config.cash_withdrawal_lock_days

    def _announce(self, request: dict, message: str):
        event = LedgerEvent(
            EventType.WITHDRAWAL_STATE_CHANGED, request["account_id"], request["amount"], message,
            data={"withdrawal_id": request["withdrawal_id"], "status": request["status"],
                  "asset": request["asset"]},
        )

        def callback():
            logger.info("Withdrawal %s -> %s (%s %s for %s)", request["withdrawal_id"],
                        request["status"], request["amount"], request["asset"], request["account_id"])
            if self._notifier is not None:
                self._notifier.publish(event)
        self._db.after_commit(callback)

    # -------------------------------------------------------------------
    # User side
    # -------------------------------------------------------------------

    async def request(self, account_id: str, amount, network: str, destination_address: str,
                      asset: str = WithdrawalAsset.TOKEN.value) -> dict:
        try:
            kind = WithdrawalAsset(asset)
        except ValueError:
            raise LedgerError(f"Unknown withdrawal asset {asset!r}")
        network = (network or "").upper()
        if network not in self._config.withdrawal_networks:
            raise LedgerError(f"Unsupported network {network!r}")
        destination = validate_destination(network, destination_address)
        value = to_decimal(amount)
        minimum, lock_days = self._class_rules(kind)
        if value < minimum:
            raise BelowMinimum(f"{kind.value} withdrawal", value, minimum)

        async with self._db.transaction():
            account = await self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if not account["is_active"]:
                raise AccountLocked(account_id)
            held = account["available_tokens"] if kind is WithdrawalAsset.TOKEN else account["cash_balance"]
            if value > held:
                raise InsufficientAvailable(
                    account_id, value, held, "tokens" if kind is WithdrawalAsset.TOKEN else "cash",
                )
            request = await self._withdrawals.create(
                f"wd-{uuid.uuid4().hex[:12]}", account_id, kind.value, to_micro(value), network,
                destination, lock_days, self._clock.timestamp(),
            )
            self._announce(request, f"Withdrawal of {value} {kind.value} requested")
        return request

    # -------------------------------------------------------------------
    # Admin side
    # -------------------------------------------------------------------

    async def _load(self, withdrawal_id: str) -> dict:
        request = await self._withdrawals.get(withdrawal_id)
        if request is None:
            raise RecordNotFound(f"Withdrawal {withdrawal_id} not found")
        return request

    def _check_lock(self, request: dict):
        now = self._clock.timestamp()
        ready = eligible_at(request)
        if now < ready:
            remaining = int(-(-(ready - now) // SECONDS_PER_DAY))
            raise LockPeriodActive(ready, remaining)

    async def approve(self, withdrawal_id: str, admin_id: str = "") -> dict:
        async with self._db.transaction():
            request = await self._load(withdrawal_id)
            status = WithdrawalStatus(request["status"])
            if status in (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED):
                return request
            ensure_transition(status, WithdrawalStatus.APPROVED)
            self._check_lock(request)

            if not await self._withdrawals.transition(
                withdrawal_id, status.value, WithdrawalStatus.APPROVED.value, decided_by=admin_id,
            ):
                raise InvalidTransition("withdrawal", status, WithdrawalStatus.APPROVED)
            entry = await self._ledger.debit_for_withdrawal(
                request["account_id"], request["amount"], withdrawal_id,
            )
            await self._withdrawals.transition(
                withdrawal_id, WithdrawalStatus.APPROVED.value, WithdrawalStatus.PROCESSING.value,
                ledger_entry_id=entry["id"],
            )
            request = await self._withdrawals.get(withdrawal_id)
            self._announce(request, f"Withdrawal approved by {admin_id or 'admin'}, payout processing")
        return request

    async def reject(self, withdrawal_id: str, admin_id: str = "", reason: str = "") -> dict:
        async with self._db.transaction():
            request = await self._load(withdrawal_id)
            status = WithdrawalStatus(request["status"])
            if status is WithdrawalStatus.REJECTED:
                return request
            ensure_transition(status, WithdrawalStatus.REJECTED)
            self._check_lock(request)
            if not await self._withdrawals.transition(
                withdrawal_id, status.value, WithdrawalStatus.REJECTED.value,
                decided_by=admin_id, reason=reason,
            ):
                raise InvalidTransition("withdrawal", status, WithdrawalStatus.REJECTED)
            request = await self._withdrawals.get(withdrawal_id)
            self._announce(request, f"Withdrawal rejected: {reason or 'no reason given'}")
        return request

    async def complete(self, withdrawal_id: str, tx_hash: str = "") -> dict:
        """The payout collaborator confirmed the off-chain transfer."""
        async with self._db.transaction():
            request = await self._load(withdrawal_id)
            status = WithdrawalStatus(request["status"])
            if status is WithdrawalStatus.COMPLETED:
                return request
            ensure_transition(status, WithdrawalStatus.COMPLETED)
            if not await self._withdrawals.transition(
                withdrawal_id, status.value, WithdrawalStatus.COMPLETED.value, tx_hash=tx_hash,
            ):
                raise InvalidTransition("withdrawal", status, WithdrawalStatus.COMPLETED)
            if request["ledger_entry_id"] is not None:
                await self._ledger.complete_withdrawal_entry(request["ledger_entry_id"])
            request = await self._withdrawals.get(withdrawal_id)
            self._announce(request, f"Withdrawal paid out{f' in {tx_hash}' if tx_hash else ''}")
        return request

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get(self, withdrawal_id: str) -> dict:
        async with self._db.read():
            return await self._load(withdrawal_id)

    async def eligible_at(self, withdrawal_id: str) -> float:
        return eligible_at(await self.get(withdrawal_id))

    async def list_requests(self, status: Optional[str] = None, limit: Optional[int] = 100,
                            offset: int = 0) -> List[dict]:
        if status is not None:
            status = WithdrawalStatus(status).value
        async with self._db.read():
            requests = await self._withdrawals.list_all(status=status, limit=limit, offset=offset)
        for request in requests:
            request["eligible_at"] = eligible_at(request)
        return requests

    async def list_for_account(self, account_id: str) -> List[dict]:
        async with self._db.read():
            requests = await self._withdrawals.list_for_account(account_id)
        for request in requests:
            request["eligible_at"] = eligible_at(request)
        return requests
