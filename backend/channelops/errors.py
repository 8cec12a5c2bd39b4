"""
Domain errors raised inside a unit of work.

These never leave a public service call as exceptions: the transaction
boundary (services/transaction.py) rolls back and turns them into a
ServiceResult carrying a ServiceError of the matching kind.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    GUARD_FAILED = "guard_failed"
    INSUFFICIENT_STOCK = "insufficient_stock"
    ALREADY_CANCELLED = "already_cancelled"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    LEDGER_INVARIANT_VIOLATION = "ledger_invariant_violation"
    INVALID_INPUT = "invalid_input"
    STORAGE_ERROR = "storage_error"


FATAL_KINDS = frozenset({ErrorKind.LEDGER_INVARIANT_VIOLATION, ErrorKind.STORAGE_ERROR})


class LedgerError(Exception):
    """Base class for recoverable and fatal domain failures."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(LedgerError):
    """Referenced channel, stock request, sale or summary does not exist."""
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(LedgerError):
    """Target status is not a successor of the current status."""
    kind = ErrorKind.INVALID_TRANSITION


class GuardFailedError(LedgerError):
    """Transition is in the table but a precondition does not hold."""
    kind = ErrorKind.GUARD_FAILED


class InsufficientStockError(LedgerError):
    kind = ErrorKind.INSUFFICIENT_STOCK


class AlreadyCancelledError(LedgerError):
    kind = ErrorKind.ALREADY_CANCELLED


class ConcurrencyConflictError(LedgerError):
    """A conditional write lost its race against a concurrent transaction."""
    kind = ErrorKind.CONCURRENCY_CONFLICT


class LedgerInvariantViolation(LedgerError):
    """
    A counter would go negative or the conservation law would break.

    Fatal: indicates a bug elsewhere, never corrected silently.
    """
    kind = ErrorKind.LEDGER_INVARIANT_VIOLATION


class ValidationError(LedgerError):
    """Malformed caller input."""
    kind = ErrorKind.INVALID_INPUT
