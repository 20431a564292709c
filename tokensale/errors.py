"""
errors.py - Ledger error taxonomy.

Every domain violation is a LedgerError. The REST layer turns one into a
response carrying its status_code and class name; they subclass ValueError
so callers that only know about bad input still catch them.
"""

from typing import Optional


class LedgerError(ValueError):
    """Base class for domain violations. Raising one never leaves partial state."""

    status_code = 400

    @property
    def code(self) -> str:
        return type(self).__name__


class InsufficientAvailable(LedgerError):
    def __init__(self, account_id: str, requested, available, what: str = "tokens"):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient available {what} for {account_id}: "
            f"requested {requested}, available {available}"
        )


class SupplyExceeded(LedgerError):
    status_code = 409

    def __init__(self, requested, remaining):
        self.requested = requested
        self.remaining = remaining
        super().__init__(f"Token supply exhausted: requested {requested}, remaining {remaining}")


class InvalidPrice(LedgerError):
    pass


class NoPriceAvailable(LedgerError):
    status_code = 404


class AccountLocked(LedgerError):
    status_code = 403

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is not active")


class DuplicateExternalRef(LedgerError):
    status_code = 409

    def __init__(self, external_ref: str):
        self.external_ref = external_ref
        super().__init__(f"Ledger entry with external ref {external_ref} already exists")


class UnknownCounterparty(LedgerError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"No account registered for wallet {address}")


class AccountNotFound(LedgerError, KeyError):
    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")

    def __str__(self):
        return self.args[0]


class RecordNotFound(LedgerError):
    status_code = 404


class InvalidTransition(LedgerError):
    status_code = 409

    def __init__(self, what: str, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {what} from {_v(current)} to {_v(target)}")


class LockPeriodActive(LedgerError):
    status_code = 409

    def __init__(self, eligible_at: float, remaining_days: int):
        self.eligible_at = eligible_at
        self.remaining_days = remaining_days
        super().__init__(f"Lock period has not ended ({remaining_days} day(s) remaining)")


class BelowMinimum(LedgerError):
    def __init__(self, what: str, amount, minimum):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum {what} is {minimum}, got {amount}")


class WithdrawalPending(LedgerError):
    status_code = 409


class InvalidAmount(LedgerError):
    pass


class InvalidLockPeriod(LedgerError):
    pass


class InvalidAddress(LedgerError):
    pass


class InvalidCommissionRate(LedgerError):
    pass


def _v(state) -> Optional[str]:
    return getattr(state, "value", state)
