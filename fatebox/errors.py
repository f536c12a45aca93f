"""
Settlement error taxonomy.

- PreconditionViolation: wrong state for the requested transition. Rejected
  locally, never reaches the ledger.
- ExternalServiceError: ledger rejected or oracle failed. OracleNotReady is the
  retry-later flavour.
- InsufficientVaultBalance: solvency failure. Kept apart from ledger errors so
  callers can page an operator.

Reveal-window expiry is not an error state; the watchdog turns it into
refund eligibility.
"""

from enum import Enum


class OperationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    NOT_READY = "not_ready"     # retry later
    FAILED = "failed"           # needs refund / manual intervention


class FateboxError(Exception):
    """Base for all settlement engine errors."""

    status: OperationStatus = OperationStatus.FAILED

    def __init__(self, message: str, box_id: str = ""):
        super().__init__(message)
        self.message = message
        self.box_id = box_id


class PreconditionViolation(FateboxError):
    """Box is not in the state the transition requires."""


class RevealWindowExpired(PreconditionViolation):
    """Commit is older than the reveal window. The box awaits refund."""


class BoxNotFound(PreconditionViolation):
    pass


class ExternalServiceError(FateboxError):
    """Ledger or oracle failure, carries the underlying message."""


class LedgerRejected(ExternalServiceError):
    def __init__(self, message: str, box_id: str = "", tx_hash: str = ""):
        super().__init__(message, box_id)
        self.tx_hash = tx_hash


class OracleNotReady(ExternalServiceError):
    """Oracle has not published the value for this round yet."""

    status = OperationStatus.NOT_READY


class InsufficientVaultBalance(FateboxError):
    """Vault cannot cover the payout or withdrawal. Never partially paid."""

    def __init__(self, message: str, box_id: str = "", required: int = 0, available: int = 0):
        super().__init__(message, box_id)
        self.required = required
        self.available = available
