"""Error types raised by the ledger.

Financial edge cases (zero base balance, zero expected profit, missing
balance snapshots) are not exceptions; they are recorded as ``ResultFlag``
values on the trade.
"""
from datetime import datetime
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""


class NotFound(LedgerError):
    """Unknown trade or account identifier."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class DuplicateEntity(LedgerError):
    """A unique key (tx hash, username, email, wallet) is already taken."""


class InvalidStateTransition(LedgerError):
    """Transition not allowed from the entity's current state."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class AccountLocked(LedgerError):
    """Authentication rejected because the account is locked."""

    def __init__(self, account_id: str, lock_until: datetime):
        super().__init__(f"Account {account_id} locked until {lock_until.isoformat()}")
        self.account_id = account_id
        self.lock_until = lock_until


class StorageFailure(LedgerError):
    """Error propagated from the storage layer."""


class ConcurrentModification(StorageFailure):
    """Entity was modified by another writer between read and write."""


class InvalidTradeReport(LedgerError):
    """Execution report inconsistent with the recorded trade."""
