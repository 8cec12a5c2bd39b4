# Overview: Staff directory and per-channel attendance.

from __future__ import annotations

from datetime import date
from typing import Optional, Union

from sqlalchemy import func

from ..errors import GuardFailedError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Channel, ChannelAttendance, Staff, StaffAssignment
from ..time_utils import parse_iso_date
from .event_log_service import append_event_log
from .results import ServiceResult
from .sequence_service import next_number
from .status_machine import PAYABLE_CHANNEL_STATUSES, PaymentStatus
from .transaction import lock_for_update, run_atomic

STAFF_CODE = "STAFF_CODE"

STAFF_FIELDS = ("name", "role", "phone", "daily_rate_cents", "commission_cents")
_RATE_FIELDS = ("daily_rate_cents", "commission_cents")


def _load_staff(staff_id: int) -> Staff:
    staff = lock_for_update(db.session.query(Staff).filter_by(id=staff_id)).first()
    if not staff:
        raise NotFoundError("Staff not found", {"staff_id": staff_id})
    return staff


def _apply_fields(staff: Staff, fields: dict) -> None:
    unknown = sorted(set(fields) - set(STAFF_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown staff fields: {', '.join(unknown)}", {"unknown": unknown})

    for key, value in fields.items():
        if key in ("name", "role"):
            if not value or not str(value).strip():
                raise ValidationError(f"{key} is required", {"field": key})
            value = str(value).strip()
        elif key in _RATE_FIELDS and value is not None:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{key} must be a non-negative integer", {"field": key})
        elif key == "phone":
            value = (value or "").strip() or None
        setattr(staff, key, value)


def create_staff(*, name: str, role: str = "PC", **fields) -> ServiceResult[Staff]:
    """New active staff member with the next "S0001"-style code."""
    def _op():
        staff = Staff(name="", role="PC", is_active=True)
        _apply_fields(staff, {"name": name, "role": role, **fields})
        staff.code = f"S{next_number('staff', STAFF_CODE):04d}"
        db.session.add(staff)
        db.session.flush()
        return staff

    return run_atomic(_op, label="create_staff")


def update_staff(staff_id: int, **fields) -> ServiceResult[Staff]:
    def _op():
        staff = _load_staff(staff_id)
        _apply_fields(staff, fields)
        db.session.flush()
        return staff

    return run_atomic(_op, label="update_staff")


def deactivate_staff(staff_id: int) -> ServiceResult[Staff]:
    """Soft delete: the row stays so past assignments still resolve."""
    def _op():
        staff = _load_staff(staff_id)
        staff.is_active = False
        db.session.flush()
        return staff

    return run_atomic(_op, label="deactivate_staff")


def get_staff(staff_id: int) -> Optional[Staff]:
    return db.session.query(Staff).filter_by(id=staff_id).first()


def list_staff(*, include_inactive: bool = False) -> list[Staff]:
    query = db.session.query(Staff)
    if not include_inactive:
        query = query.filter(Staff.is_active.is_(True))
    return query.order_by(Staff.name.asc(), Staff.id.asc()).all()


# =============================================================================
# Attendance
# =============================================================================

def _as_work_date(value: Union[date, str, None]) -> date:
    if isinstance(value, date):
        return value
    try:
        day = parse_iso_date(value) if isinstance(value, str) else None
    except ValueError:
        day = None
    if day is None:
        raise ValidationError("work_date is not a valid date", {"field": "work_date", "value": value})
    return day


def record_attendance(
    channel_id: int,
    staff_id: int,
    work_date: Union[date, str],
    *,
    actor: Optional[str] = None,
) -> ServiceResult[ChannelAttendance]:
    """
    Mark an assigned staff member as having worked the channel on work_date.

    Attendance drives the compensation summary, so it is locked together
    with expenses once payment has been submitted.
    """
    def _op():
        channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
        if not channel:
            raise NotFoundError("Channel not found", {"channel_id": channel_id})
        if channel.status not in {s.value for s in PAYABLE_CHANNEL_STATUSES}:
            raise GuardFailedError(
                "Attendance can only be recorded once the channel has started selling",
                {"status": channel.status},
            )
        if channel.payment_status != PaymentStatus.NONE.value:
            raise GuardFailedError(
                "Attendance is locked once payment has been submitted",
                {"payment_status": channel.payment_status},
            )

        assigned = db.session.query(StaffAssignment).filter_by(channel_id=channel.id, staff_id=staff_id).first()
        if assigned is None:
            raise NotFoundError("Staff member is not assigned to this channel", {"staff_id": staff_id})

        day = _as_work_date(work_date)
        if (channel.start_date and day < channel.start_date) or (channel.end_date and day > channel.end_date):
            raise ValidationError(
                "work_date is outside the channel's dates",
                {"work_date": day.isoformat()},
            )

        duplicate = (
            db.session.query(ChannelAttendance)
            .filter_by(channel_id=channel.id, staff_id=staff_id, work_date=day)
            .first()
        )
        if duplicate:
            raise GuardFailedError(
                "Attendance already recorded for that day",
                {"staff_id": staff_id, "work_date": day.isoformat()},
            )

        attendance = ChannelAttendance(channel_id=channel.id, staff_id=staff_id, work_date=day, recorded_by=actor)
        db.session.add(attendance)
        db.session.flush()
        append_event_log(
            channel_id=channel.id,
            action="attendance_recorded",
            changed_by=actor,
            details={"staff_id": staff_id, "work_date": day.isoformat()},
        )
        return attendance

    return run_atomic(_op, label="record_attendance")


def days_worked(channel_id: int) -> dict[int, int]:
    """staff_id -> number of attended days at the channel."""
    rows = (
        db.session.query(ChannelAttendance.staff_id, func.count(ChannelAttendance.id))
        .filter(ChannelAttendance.channel_id == channel_id)
        .group_by(ChannelAttendance.staff_id)
        .all()
    )
    return {staff_id: count for staff_id, count in rows}
