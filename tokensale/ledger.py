"""
ledger.py - Account ledger.

The only code that changes account balances. Each primitive runs inside
Database.transaction(), joining the caller's transaction when there is one,
and pairs its balance update with exactly one ledger entry. Balance updates
are guarded single statements (see AccountRepo), and the schema CHECK on
total = staked + available backs them up.

Events and the INFO log line for a mutation are registered with
after_commit, so nothing is announced for work that is later rolled back.
"""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from tokensale.errors import (
    AccountLocked,
    AccountNotFound,
    DuplicateExternalRef,
    InsufficientAvailable,
    InvalidAmount,
    InvalidTransition,
    RecordNotFound,
)
from tokensale.notifications import EventType, LedgerEvent
from tokensale.states import (
    CommissionStatus,
    EntryKind,
    EntryStatus,
    WithdrawalAsset,
    WithdrawalStatus,
    ensure_transition,
)
from tokensale.units import cash_for_tokens, from_micro, to_micro

if TYPE_CHECKING:
    from tokensale.notifications import NotificationPort
    from tokensale.storage import (
        AccountRepo,
        Database,
        LedgerEntryRepo,
        ReferralRepo,
        WithdrawalRepo,
    )
    from tokensale.supply import SupplyLedger

logger = logging.getLogger("ledger")


def _positive(value, what: str) -> int:
    amount = to_micro(value)
    if amount <= 0:
        raise InvalidAmount(f"{what} must be positive, got {value}")
    return amount


class AccountLedger:
    """Balance mutation primitives plus the reads that go with them."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        entry_repo: "LedgerEntryRepo",
        referral_repo: "ReferralRepo",
        withdrawal_repo: "WithdrawalRepo",
        supply: "SupplyLedger",
        notifier: Optional["NotificationPort"] = None,
    ):
        self._db = db
        self._accounts = account_repo
        self._entries = entry_repo
        self._referrals = referral_repo
        self._withdrawals = withdrawal_repo
        self._supply = supply
        self._notifier = notifier

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    async def _require_account(self, account_id: str) -> dict:
        account = await self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def _committed(self, event: Optional[LedgerEvent], msg: str, *args):
        def callback():
            logger.info(msg, *args)
            if event is not None and self._notifier is not None:
                self._notifier.publish(event)
        self._db.after_commit(callback)

    def _credited(self, account_id: str, amount: Decimal, message: str, **data) -> LedgerEvent:
        return LedgerEvent(EventType.ACCOUNT_CREDITED, account_id, amount, message, data=data)

    # -------------------------------------------------------------------
    # Purchases
    # -------------------------------------------------------------------

    async def credit_purchase(
        self,
        account_id: str,
        cash_amount,
        token_amount,
        price_per_token,
        external_ref: Optional[str] = None,
        payment_method: str = "",
        description: str = "",
    ) -> dict:
        """Reserve supply and credit tokens, writing a Completed purchase entry.

        With an external_ref this is idempotent: if an entry with that ref
        already exists it is returned and nothing else changes.
        """
        tokens = _positive(token_amount, "Token amount")
        cash = to_micro(cash_amount)
        price = to_micro(price_per_token)

        async with self._db.transaction():
            if external_ref is not None:
                existing = await self._entries.get_by_external_ref(external_ref)
                if existing is not None:
                    logger.info("Purchase %s already recorded as entry #%d", external_ref, existing["id"])
                    return existing
            await self._require_account(account_id)
            try:
                entry = await self._entries.insert(
                    account_id, EntryKind.PURCHASE.value, EntryStatus.COMPLETED.value,
                    cash_amount=cash, token_amount=tokens, price_per_token=price,
                    payment_method=payment_method, external_ref=external_ref,
                    description=description or f"Purchased {from_micro(tokens)} tokens",
                )
            except DuplicateExternalRef:
                # Nothing written yet in this primitive
                return await self._entries.get_by_external_ref(external_ref)
            await self._supply.reserve_micro(tokens)
            await self._accounts.add_tokens(account_id, tokens)
            self._committed(
                self._credited(account_id, from_micro(tokens),
                               f"{from_micro(tokens)} tokens credited for ${from_micro(cash)}",
                               entry_id=entry["id"], external_ref=external_ref),
                "Purchase credited: account=%s tokens=%s cash=%s price=%s ref=%s entry=#%d",
                account_id, from_micro(tokens), from_micro(cash), from_micro(price),
                external_ref or "-", entry["id"],
            )
        return entry

    async def open_pending_purchase(
        self, account_id: str, cash_amount, token_amount, price_per_token, payment_method: str,
    ) -> dict:
        """Reserve supply for a purchase awaiting external payment; no tokens move yet."""
        tokens = _positive(token_amount, "Token amount")
        cash = to_micro(cash_amount)
        price = to_micro(price_per_token)
        async with self._db.transaction():
            await self._require_account(account_id)
            await self._supply.reserve_micro(tokens)
            entry = await self._entries.insert(
                account_id, EntryKind.PURCHASE.value, EntryStatus.PENDING.value,
                cash_amount=cash, token_amount=tokens, price_per_token=price,
                payment_method=payment_method,
                description=f"Awaiting {payment_method} payment of ${from_micro(cash)}",
            )
            self._committed(
                None,
                "Pending purchase opened: account=%s tokens=%s cash=%s method=%s entry=#%d",
                account_id, from_micro(tokens), from_micro(cash), payment_method, entry["id"],
            )
        return entry

    async def _pending_purchase(self, entry_id: int) -> dict:
        entry = await self._entries.get(entry_id)
        if entry is None or entry["kind"] != EntryKind.PURCHASE.value:
            raise RecordNotFound(f"Purchase entry #{entry_id} not found")
        return entry

    async def settle_pending_purchase(self, entry_id: int) -> dict:
        """Pending purchase -> Completed; credits the tokens reserved when it opened."""
        async with self._db.transaction():
            entry = await self._pending_purchase(entry_id)
            status = EntryStatus(entry["status"])
            if status is EntryStatus.COMPLETED:
                return entry
            ensure_transition(status, EntryStatus.COMPLETED)
            tokens = to_micro(entry["token_amount"])
            if not await self._entries.transition(entry_id, status.value, EntryStatus.COMPLETED.value):
                raise InvalidTransition("ledger entry", status, EntryStatus.COMPLETED)
            await self._accounts.add_tokens(entry["account_id"], tokens)
            entry = await self._entries.get(entry_id)
            self._committed(
                self._credited(entry["account_id"], entry["token_amount"],
                               f"Payment confirmed, {entry['token_amount']} tokens credited",
                               entry_id=entry_id),
                "Pending purchase settled: account=%s tokens=%s entry=#%d",
                entry["account_id"], entry["token_amount"], entry_id,
            )
        return entry

    async def fail_pending_purchase(self, entry_id: int) -> dict:
        """Pending purchase -> Failed; the reservation goes back to supply."""
        async with self._db.transaction():
            entry = await self._pending_purchase(entry_id)
            status = EntryStatus(entry["status"])
            if status is EntryStatus.FAILED:
                return entry
            ensure_transition(status, EntryStatus.FAILED)
            if not await self._entries.transition(entry_id, status.value, EntryStatus.FAILED.value):
                raise InvalidTransition("ledger entry", status, EntryStatus.FAILED)
            await self._supply.release_micro(to_micro(entry["token_amount"]))
            entry = await self._entries.get(entry_id)
            self._committed(
                None, "Pending purchase failed: account=%s tokens=%s entry=#%d",
                entry["account_id"], entry["token_amount"], entry_id,
            )
        return entry

    async def debit_cash(self, account_id: str, cash_amount) -> Decimal:
        """Take cash for a balance-funded purchase; the purchase entry records it."""
        cash = _positive(cash_amount, "Cash amount")
        async with self._db.transaction():
            account = await self._require_account(account_id)
            if not await self._accounts.remove_cash(account_id, cash):
                raise InsufficientAvailable(account_id, from_micro(cash), account["cash_balance"], "cash")
        return from_micro(cash)

    async def convert_tokens_to_cash(self, account_id: str, token_amount, price_per_token) -> dict:
        """Sell available tokens back for cash at the given price (Sale entry)."""
        tokens = _positive(token_amount, "Token amount")
        price = to_micro(price_per_token)
        cash = cash_for_tokens(tokens, price)
        if cash <= 0:
            raise InvalidAmount(f"{from_micro(tokens)} tokens are worth less than {from_micro(1)} in cash")
        async with self._db.transaction():
            account = await self._require_account(account_id)
            if not await self._accounts.remove_available_tokens(account_id, tokens):
                raise InsufficientAvailable(account_id, from_micro(tokens), account["available_tokens"])
            await self._accounts.add_cash(account_id, cash)
            entry = await self._entries.insert(
                account_id, EntryKind.SALE.value, EntryStatus.COMPLETED.value,
                cash_amount=cash, token_amount=tokens, price_per_token=price,
                payment_method="cash_balance",
                description=f"Converted {from_micro(tokens)} tokens to ${from_micro(cash)}",
            )
            self._committed(
                self._credited(account_id, from_micro(cash),
                               f"${from_micro(cash)} credited for {from_micro(tokens)} tokens",
                               entry_id=entry["id"], asset="cash"),
                "Tokens converted: account=%s tokens=%s cash=%s entry=#%d",
                account_id, from_micro(tokens), from_micro(cash), entry["id"],
            )
        return entry

    async def credit_cash_deposit(self, account_id: str, cash_amount, description: str = "",
                                  reference_id: str = "") -> dict:
        cash = _positive(cash_amount, "Cash amount")
        async with self._db.transaction():
            await self._require_account(account_id)
            await self._accounts.add_cash(account_id, cash)
            entry = await self._entries.insert(
                account_id, EntryKind.CASH_DEPOSIT.value, EntryStatus.COMPLETED.value,
                cash_amount=cash, reference_id=reference_id,
                description=description or f"Cash deposit of ${from_micro(cash)}",
            )
            self._committed(
                self._credited(account_id, from_micro(cash), f"${from_micro(cash)} deposited",
                               entry_id=entry["id"], asset="cash"),
                "Cash deposited: account=%s cash=%s entry=#%d", account_id, from_micro(cash), entry["id"],
            )
        return entry

    # -------------------------------------------------------------------
    # Staking
    # -------------------------------------------------------------------

    async def debit_for_stake(self, account_id: str, amount, position_id: str) -> dict:
        """Move amount from available to staked."""
        tokens = _positive(amount, "Stake amount")
        async with self._db.transaction():
            account = await self._require_account(account_id)
            if not await self._accounts.move_to_staked(account_id, tokens):
                logger.warning(
                    "Stake rejected: account=%s requested=%s available=%s",
                    account_id, from_micro(tokens), account["available_tokens"],
                )
                raise InsufficientAvailable(account_id, from_micro(tokens), account["available_tokens"])
            entry = await self._entries.insert(
                account_id, EntryKind.STAKE_CREATE.value, EntryStatus.COMPLETED.value,
                token_amount=tokens, reference_id=position_id,
                description=f"Staked {from_micro(tokens)} tokens",
            )
            self._committed(
                None, "Tokens staked: account=%s tokens=%s position=%s",
                account_id, from_micro(tokens), position_id,
            )
        return entry

    async def credit_from_stake_maturity(self, account_id: str, principal, rewards,
                                         position_id: str) -> dict:
        """Return principal to available and issue the rewards (reserved against supply)."""
        principal_micro = _positive(principal, "Principal")
        rewards_micro = to_micro(rewards)
        if rewards_micro < 0:
            raise InvalidAmount(f"Rewards cannot be negative, got {rewards}")
        returned = principal_micro + rewards_micro
        async with self._db.transaction():
            account = await self._require_account(account_id)
            if rewards_micro > 0:
                await self._supply.reserve_micro(rewards_micro)
            if not await self._accounts.release_staked(account_id, principal_micro, returned):
                raise InsufficientAvailable(account_id, from_micro(principal_micro),
                                            account["staked_tokens"], "staked tokens")
            entry = await self._entries.insert(
                account_id, EntryKind.STAKE_MATURE.value, EntryStatus.COMPLETED.value,
                token_amount=returned, reference_id=position_id,
                description=f"Stake matured: {from_micro(principal_micro)} principal + "
                            f"{from_micro(rewards_micro)} rewards",
            )
            self._committed(
                self._credited(account_id, from_micro(returned),
                               f"Staking position {position_id} matured with "
                               f"{from_micro(rewards_micro)} tokens in rewards",
                               entry_id=entry["id"], position_id=position_id),
                "Stake matured: account=%s principal=%s rewards=%s position=%s",
                account_id, from_micro(principal_micro), from_micro(rewards_micro), position_id,
            )
        return entry

    async def credit_from_stake_cancellation(self, account_id: str, principal, penalty,
                                             position_id: str) -> dict:
        """Return principal minus penalty; the penalty leaves the account's total."""
        principal_micro = _positive(principal, "Principal")
        penalty_micro = to_micro(penalty)
        if not 0 <= penalty_micro <= principal_micro:
            raise InvalidAmount(f"Penalty must be within 0 and the principal, got {penalty}")
        returned = principal_micro - penalty_micro
        async with self._db.transaction():
            account = await self._require_account(account_id)
            if not await self._accounts.release_staked(account_id, principal_micro, returned):
                raise InsufficientAvailable(account_id, from_micro(principal_micro),
                                            account["staked_tokens"], "staked tokens")
            entry = await self._entries.insert(
                account_id, EntryKind.STAKE_CANCEL.value, EntryStatus.COMPLETED.value,
                token_amount=returned, reference_id=position_id,
                description=f"Stake cancelled: {from_micro(penalty_micro)} of "
                            f"{from_micro(principal_micro)} forfeited",
            )
            self._committed(
                None, "Stake cancelled: account=%s principal=%s penalty=%s position=%s",
                account_id, from_micro(principal_micro), from_micro(penalty_micro), position_id,
            )
        return entry

    # -------------------------------------------------------------------
    # Withdrawals
    # -------------------------------------------------------------------

    async def debit_for_withdrawal(self, account_id: str, amount, withdrawal_id: str) -> dict:
        """Debit an Approved withdrawal request; writes a Pending withdrawal entry."""
        value = _positive(amount, "Withdrawal amount")
        async with self._db.transaction():
            request = await self._withdrawals.get(withdrawal_id)
            if request is None or request["account_id"] != account_id:
                raise RecordNotFound(f"Withdrawal {withdrawal_id} not found for {account_id}")
            status = WithdrawalStatus(request["status"])
            if status is not WithdrawalStatus.APPROVED:
                raise InvalidTransition("withdrawal", status, WithdrawalStatus.PROCESSING)
            account = await self._require_account(account_id)
            if not account["is_active"]:
                raise AccountLocked(account_id)

            asset = WithdrawalAsset(request["asset"])
            if asset is WithdrawalAsset.TOKEN:
                if not await self._accounts.remove_available_tokens(account_id, value):
                    raise InsufficientAvailable(account_id, from_micro(value), account["available_tokens"])
                amounts = {"token_amount": value}
            else:
                if not await self._accounts.remove_cash(account_id, value):
                    raise InsufficientAvailable(account_id, from_micro(value), account["cash_balance"], "cash")
                amounts = {"cash_amount": value}

            entry = await self._entries.insert(
                account_id, EntryKind.WITHDRAWAL.value, EntryStatus.PENDING.value,
                reference_id=withdrawal_id, payment_method=request["network"],
                description=f"Withdrawal of {from_micro(value)} {asset.value} to "
                            f"{request['destination_address']}",
                **amounts,
            )
            self._committed(
                None, "Withdrawal debited: account=%s %s=%s withdrawal=%s entry=#%d",
                account_id, asset.value, from_micro(value), withdrawal_id, entry["id"],
            )
        return entry

    async def complete_withdrawal_entry(self, entry_id: int) -> dict:
        async with self._db.transaction():
            entry = await self._entries.get(entry_id)
            if entry is None or entry["kind"] != EntryKind.WITHDRAWAL.value:
                raise RecordNotFound(f"Withdrawal entry #{entry_id} not found")
            status = EntryStatus(entry["status"])
            if status is EntryStatus.COMPLETED:
                return entry
            ensure_transition(status, EntryStatus.COMPLETED)
            await self._entries.transition(entry_id, status.value, EntryStatus.COMPLETED.value)
            entry = await self._entries.get(entry_id)
        return entry

    # -------------------------------------------------------------------
    # Referral commissions
    # -------------------------------------------------------------------

    async def credit_commission(self, referrer_id: str, amount, commission_id: int) -> dict:
        """Pay a commission into the referrer's cash and mark its record Paid."""
        cash = _positive(amount, "Commission")
        async with self._db.transaction():
            record = await self._referrals.get(commission_id)
            if record is None or record["referrer_id"] != referrer_id:
                raise RecordNotFound(f"Commission #{commission_id} not found for {referrer_id}")
            status = CommissionStatus(record["status"])
            if status is CommissionStatus.PAID:
                return record
            ensure_transition(status, CommissionStatus.PAID)
            await self._require_account(referrer_id)
            await self._accounts.add_referral_earnings(referrer_id, cash)
            await self._referrals.mark_paid(commission_id)
            entry = await self._entries.insert(
                referrer_id, EntryKind.REFERRAL_COMMISSION.value, EntryStatus.COMPLETED.value,
                cash_amount=cash, reference_id=str(commission_id),
                description=f"Referral commission for {record['referred_account_id']}",
            )
            record = await self._referrals.get(commission_id)
            self._committed(
                LedgerEvent(
                    EventType.COMMISSION_PAID, referrer_id, from_micro(cash),
                    f"Referral commission of ${from_micro(cash)} paid",
                    data={"commission_id": commission_id, "entry_id": entry["id"],
                          "referred_account_id": record["referred_account_id"]},
                ),
                "Commission paid: referrer=%s referred=%s amount=%s commission=#%d",
                referrer_id, record["referred_account_id"], from_micro(cash), commission_id,
            )
        return record

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_account(self, account_id: str) -> dict:
        async with self._db.read():
            return await self._require_account(account_id)

    async def balance(self, account_id: str) -> dict:
        account = await self.get_account(account_id)
        return {
            key: account[key]
            for key in ("account_id", "total_tokens", "staked_tokens", "available_tokens",
                        "cash_balance", "referral_earnings", "is_active")
        }

    async def get_entry(self, entry_id: int) -> dict:
        async with self._db.read():
            entry = await self._entries.get(entry_id)
        if entry is None:
            raise RecordNotFound(f"Ledger entry #{entry_id} not found")
        return entry

    async def find_by_external_ref(self, external_ref: str) -> Optional[dict]:
        async with self._db.read():
            return await self._entries.get_by_external_ref(external_ref)

    async def history(self, account_id: str, limit: Optional[int] = 100) -> List[dict]:
        async with self._db.read():
            await self._require_account(account_id)
            return await self._entries.list_for_account(account_id, limit)

    async def list_entries(self, kind: Optional[str] = None, status: Optional[str] = None,
                           limit: Optional[int] = 100, offset: int = 0) -> List[dict]:
        async with self._db.read():
            return await self._entries.list_all(kind, status, limit, offset)
