"""
Transaction boundary tests: commit/rollback, typed failures, retry of
lock and version conflicts, and log levels per failure class.
"""

import logging

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from channelops.errors import ConcurrencyConflictError, ErrorKind, LedgerInvariantViolation, NotFoundError
from channelops.extensions import db
from channelops.models import Staff
from channelops.services.results import GENERIC_FAILURE_MESSAGE, ServiceError, ServiceResult
from channelops.services.transaction import run_atomic


def _locked():
    return OperationalError("UPDATE channel_stocks", {}, Exception("database is locked"))


def test_success_commits(db_session):
    def _op():
        db.session.add(Staff(name="Ploy", role="PC"))
        return "ok"

    result = run_atomic(_op, label="add_staff")
    assert result.is_success
    assert result.value == "ok"
    db.session.rollback()
    assert db.session.query(Staff).filter_by(name="Ploy").count() == 1


def test_domain_error_rolls_back_and_is_typed(db_session, caplog):
    def _op():
        db.session.add(Staff(name="Ghost", role="PC"))
        db.session.flush()
        raise NotFoundError("Channel not found", {"channel_id": 7})

    with caplog.at_level(logging.INFO):
        result = run_atomic(_op, label="sample")

    assert not result.is_success
    assert result.kind == ErrorKind.NOT_FOUND
    assert result.error.details == {"channel_id": 7}
    assert result.error.user_message == "Channel not found"
    assert db.session.query(Staff).count() == 0
    assert any(r.levelno == logging.INFO and "sample rejected" in r.getMessage() for r in caplog.records)


def test_invariant_violation_is_fatal_and_logged_as_error(db_session, caplog):
    def _op():
        raise LedgerInvariantViolation("sold would go negative", {"barcode": "X"})

    with caplog.at_level(logging.INFO):
        result = run_atomic(_op, label="reverse")

    assert result.error.is_fatal
    assert result.error.user_message == GENERIC_FAILURE_MESSAGE
    assert result.error.to_dict() == {
        "kind": "ledger_invariant_violation",
        "message": GENERIC_FAILURE_MESSAGE,
        "details": {},
    }
    assert any(r.levelno == logging.ERROR for r in caplog.records)


def test_domain_concurrency_conflict_is_not_retried(db_session):
    calls = []

    def _op():
        calls.append(1)
        raise ConcurrencyConflictError("lost the race")

    result = run_atomic(_op)
    assert result.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert len(calls) == 1


@pytest.mark.parametrize("exc_factory", [_locked, lambda: StaleDataError("version mismatch")])
def test_lock_and_version_conflicts_are_retried(db_session, caplog, exc_factory):
    calls = []

    def _op():
        calls.append(1)
        if len(calls) < 3:
            raise exc_factory()
        db.session.add(Staff(name="Retry", role="PC"))
        return len(calls)

    with caplog.at_level(logging.WARNING):
        result = run_atomic(_op, label="retrying")

    assert result.is_success
    assert result.value == 3
    assert sum(1 for r in caplog.records if r.levelno == logging.WARNING) == 2
    assert db.session.query(Staff).filter_by(name="Retry").count() == 1


def test_retries_exhausted_become_storage_error(app, db_session, caplog):
    calls = []

    def _op():
        calls.append(1)
        raise _locked()

    with caplog.at_level(logging.ERROR):
        result = run_atomic(_op, label="stuck")

    assert len(calls) == app.config["TRANSACTION_RETRY_ATTEMPTS"]
    assert result.kind == ErrorKind.STORAGE_ERROR
    assert result.error.is_fatal
    assert any(r.levelno == logging.ERROR and r.exc_info for r in caplog.records)


def test_other_storage_errors_are_not_retried(db_session):
    calls = []

    def _op():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    result = run_atomic(_op, label="insert")
    assert result.kind == ErrorKind.STORAGE_ERROR
    assert "UNIQUE" not in result.error.user_message
    assert len(calls) == 1


def test_programming_errors_propagate_after_rollback(db_session):
    def _op():
        db.session.add(Staff(name="Half", role="PC"))
        db.session.flush()
        raise KeyError("bug")

    with pytest.raises(KeyError):
        run_atomic(_op)
    assert db.session.query(Staff).count() == 0


def test_arguments_are_forwarded(db_session):
    result = run_atomic(lambda a, b=0: a + b, 2, b=5, label="add")
    assert result.value == 7


class TestServiceResult:
    def test_unwrap(self):
        assert ServiceResult.success(3).unwrap() == 3
        failed = ServiceResult.failure(ServiceError(ErrorKind.NOT_FOUND, "gone"))
        with pytest.raises(RuntimeError, match="not_found: gone"):
            failed.unwrap()

    def test_success_without_value(self):
        result = ServiceResult.success()
        assert result.is_success
        assert result.kind is None
