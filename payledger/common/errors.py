"""Typed error taxonomy shared by every component.

Errors are split into retryable and fatal families so workflow loops can branch
on the class instead of message text. `details` carries the structured context
that operator summaries report.
"""

from typing import Any, Callable, TypeVar

from payledger.common.logging import logger
from payledger.common.metrics import optimistic_lock_conflicts_total


T = TypeVar("T")


class LedgerCoreError(Exception):
    """Base class for domain errors raised by the ledger and job engine."""

    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self), "retryable": self.retryable, **self.details}


class RetryableError(LedgerCoreError):
    """Transient conflict; the caller should re-read and try again."""

    retryable = True


class FatalError(LedgerCoreError):
    """Caller logic or integrity violation; retrying cannot succeed."""


class OptimisticLockConflict(RetryableError):
    """Conditional write matched zero rows because the version moved on."""


class LockUnavailable(RetryableError):
    """Named lock is held by another owner."""


class InvalidTransition(FatalError):
    """Requested status change is not in the transition table."""


class ImmutableFieldViolation(FatalError):
    """Attempted change to calculation fields fixed at job creation."""

    def __init__(self, fields: list[str], **details: Any) -> None:
        super().__init__(f"immutable fields cannot change: {', '.join(sorted(fields))}", fields=sorted(fields), **details)
        self.fields = sorted(fields)


class InvalidEntry(FatalError):
    """Ledger entry rejected before it was written."""


class AlreadyReversed(FatalError):
    """Ledger entry already has a reversal."""


class InsufficientFunds(FatalError):
    """Escrow balance cannot cover the reservation."""


class DiscrepancyDetected(FatalError):
    """Stored and derived balances disagree beyond tolerance."""


def retry_on_conflict(fn: Callable[[], T], attempts: int = 3) -> T:
    """Run `fn` again when it raises `OptimisticLockConflict`.

    `fn` must re-read the rows it writes on every call. Any other error, and the
    last conflict once attempts are exhausted, propagate to the caller.
    """

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OptimisticLockConflict as exc:
            optimistic_lock_conflicts_total.inc()
            logger.warning("optimistic_conflict attempt=%s/%s details=%s", attempt, attempts, exc.details)
            if attempt == attempts:
                raise
    raise AssertionError("unreachable")
