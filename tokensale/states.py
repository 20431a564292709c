"""
states.py - Closed status enums and their legal transitions.

Every status column in the schema maps to one of these enums; the
transition tables are the only place that decides which moves are legal.
"""

from enum import Enum
from typing import Dict, FrozenSet

from tokensale.errors import InvalidTransition


class EntryKind(str, Enum):
    PURCHASE = "purchase"
    WITHDRAWAL = "withdrawal"
    REFERRAL_COMMISSION = "referral_commission"
    STAKE_CREATE = "stake_create"
    STAKE_MATURE = "stake_mature"
    STAKE_CANCEL = "stake_cancel"
    SALE = "sale"
    CASH_DEPOSIT = "cash_deposit"


class EntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalAsset(str, Enum):
    TOKEN = "token"
    CASH = "cash"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class FlagStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ENTRY_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.PENDING: frozenset({EntryStatus.COMPLETED, EntryStatus.FAILED}),
    EntryStatus.COMPLETED: frozenset(),
    EntryStatus.FAILED: frozenset(),
}

POSITION_TRANSITIONS: Dict[PositionStatus, FrozenSet[PositionStatus]] = {
    PositionStatus.ACTIVE: frozenset({PositionStatus.COMPLETED, PositionStatus.CANCELLED}),
    PositionStatus.COMPLETED: frozenset(),
    PositionStatus.CANCELLED: frozenset(),
}

WITHDRAWAL_TRANSITIONS: Dict[WithdrawalStatus, FrozenSet[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.PROCESSING}),
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.COMPLETED}),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.REJECTED: frozenset(),
}

COMMISSION_TRANSITIONS: Dict[CommissionStatus, FrozenSet[CommissionStatus]] = {
    CommissionStatus.PENDING: frozenset({CommissionStatus.PAID}),
    CommissionStatus.PAID: frozenset(),
}

_TABLES = {
    EntryStatus: ("ledger entry", ENTRY_TRANSITIONS),
    PositionStatus: ("staking position", POSITION_TRANSITIONS),
    WithdrawalStatus: ("withdrawal", WITHDRAWAL_TRANSITIONS),
    CommissionStatus: ("commission", COMMISSION_TRANSITIONS),
}


def can_transition(current: Enum, target: Enum) -> bool:
    _, table = _TABLES[type(current)]
    return target in table[current]


def ensure_transition(current: Enum, target: Enum):
    """Raise InvalidTransition unless current -> target is a legal move."""
    what, table = _TABLES[type(current)]
    if target not in table[current]:
        raise InvalidTransition(what, current, target)


def is_terminal(state: Enum) -> bool:
    _, table = _TABLES[type(state)]
    return not table[state]
