# Overview: Append-only channel audit trail.

from __future__ import annotations

from typing import Any, Optional

from ..extensions import db
from ..models import EventLog

"""
Event log invariants

- Append-only: no updates, no deletes.
- Written inside the same unit of work as the action it records, so a
  rolled-back action leaves no log entry behind.
- details carries identifiers and amounts only, never full entity state.
"""


def append_event_log(
    *,
    channel_id: int,
    action: str,
    changed_by: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> EventLog:
    entry = EventLog(
        channel_id=channel_id,
        action=action,
        changed_by=changed_by,
        details=details or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_event_log(channel_id: int, *, limit: int = 200) -> list[EventLog]:
    return (
        db.session.query(EventLog)
        .filter_by(channel_id=channel_id)
        .order_by(EventLog.created_at.asc(), EventLog.id.asc())
        .limit(limit)
        .all()
    )
