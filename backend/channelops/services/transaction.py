# Overview: Atomicity boundary shared by every public service operation.

from __future__ import annotations

import time
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ErrorKind, LedgerError
from ..extensions import db
from .results import ServiceError, ServiceResult

T = TypeVar("T")


def lock_for_update(query):
    """
    Apply row-level locking for document rows (channels, requests, sales).

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Quantity counters do not rely on this; they use conditional UPDATEs.
    """
    return query.with_for_update()


def _storage_failure(label: str) -> ServiceResult:
    return ServiceResult.failure(
        ServiceError(
            kind=ErrorKind.STORAGE_ERROR,
            message=f"{label} failed due to a storage error",
        )
    )


def _domain_failure(label: str, exc: LedgerError) -> ServiceResult:
    if exc.kind == ErrorKind.LEDGER_INVARIANT_VIOLATION:
        current_app.logger.error("%s aborted: ledger invariant violation: %s %s", label, exc.message, exc.details)
    else:
        current_app.logger.info("%s rejected (%s): %s", label, exc.kind.value, exc.message)
    return ServiceResult.failure(ServiceError.from_exception(exc))


def run_atomic(fn: Callable[..., T], *args, label: str | None = None, **kwargs) -> ServiceResult[T]:
    """
    Run fn as one unit of work on the scoped session.

    - Success: commit, return ServiceResult.success(value).
    - LedgerError: roll back, return the typed failure. Never retried;
      a domain ConcurrencyConflict is for the caller to retry with fresh data.
    - OperationalError / StaleDataError (locks, deadlocks, optimistic version
      conflicts): roll back and re-run the whole unit with exponential backoff,
      then report storage_error.
    - Any other SQLAlchemyError: roll back, report storage_error.

    Anything else is a programming error: rolled back and re-raised.
    """
    label = label or fn.__name__
    attempts = max(1, int(current_app.config.get("TRANSACTION_RETRY_ATTEMPTS", 3)))
    backoff_base = float(current_app.config.get("TRANSACTION_RETRY_BACKOFF", 0.1))

    for attempt in range(attempts):
        try:
            value = fn(*args, **kwargs)
            db.session.commit()
            return ServiceResult.success(value)
        except LedgerError as exc:
            db.session.rollback()
            return _domain_failure(label, exc)
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.exception("%s failed after %d attempts", label, attempts)
                return _storage_failure(label)
            current_app.logger.warning("%s: retrying after %s (attempt %d)", label, type(exc).__name__, attempt + 1)
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("%s failed due to a storage error", label)
            return _storage_failure(label)
        except Exception:
            db.session.rollback()
            raise

    return _storage_failure(label)
