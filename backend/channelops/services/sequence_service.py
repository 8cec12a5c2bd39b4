# Overview: Atomic counters for channel codes and bill numbers.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import utcnow

CHANNEL_CODE = "CHANNEL_CODE"
BILL_NUMBER = "BILL_NUMBER"


def _read_allocated(scope_key: str, document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(scope_key=scope_key, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_number(scope_key: str, document_type: str) -> int:
    """
    Atomically allocate the next number in (scope_key, document_type).

    Must run inside an open unit of work; the allocation commits or rolls
    back with it, so an aborted sale does not burn a bill number.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.scope_key == scope_key,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _read_allocated(scope_key, document_type)

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(scope_key=scope_key, document_type=document_type, next_number=2))
        return 1
    except IntegrityError:
        # Lost the race to create the row; the winner's row is now visible
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _read_allocated(scope_key, document_type)


def next_channel_code(channel_type: str) -> str:
    """EV-YYYYMM-NNN for events (monthly sequence), BR-NNN for branches."""
    if channel_type == "EVENT":
        prefix = f"EV-{utcnow():%Y%m}"
    else:
        prefix = "BR"
    number = next_number(prefix, CHANNEL_CODE)
    return f"{prefix}-{number:03d}"


def next_bill_code(channel_id: int, channel_code: str) -> str:
    pad = int(current_app.config.get("BILL_NUMBER_PAD", 4))
    number = next_number(f"channel:{channel_id}", BILL_NUMBER)
    return f"{channel_code}-{number:0{pad}d}"
