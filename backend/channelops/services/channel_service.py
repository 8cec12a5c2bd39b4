# Overview: Channel lifecycle: creation, staffing, approval, close-out, return, payment, completion.

from __future__ import annotations

from datetime import date
from typing import Iterable, Mapping, Optional, Union

from sqlalchemy import func

from ..errors import GuardFailedError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Channel, ChannelExpense, ReturnSummary, Shipment, Staff, StaffAssignment, StockRequest
from ..time_utils import parse_iso_date
from .event_log_service import append_event_log
from .results import ServiceResult
from .sale_service import channel_sales_summary
from .sequence_service import next_channel_code
from .staff_service import days_worked
from .status_machine import (
    ChannelStatus,
    PaymentStatus,
    StockRequestStatus,
    apply_channel_transition,
    apply_payment_transition,
    apply_stock_request_transition,
    require_channel_transition,
)
from .stock_ledger import apply_close_out, apply_return_confirmation, channel_stock, open_return_summary
from .stock_request_service import approve_request_locked, build_stock_request
from .transaction import lock_for_update, run_atomic

CHANNEL_TYPES = ("EVENT", "BRANCH")

EDITABLE_FIELDS = (
    "name",
    "location",
    "start_date",
    "end_date",
    "sales_target_cents",
    "responsible_person_name",
    "phone",
    "notes",
)


def _load_channel(channel_id: int) -> Channel:
    channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
    if not channel:
        raise NotFoundError("Channel not found", {"channel_id": channel_id})
    return channel


def _as_date(value: Union[date, str, None], field: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} is not a valid date", {"field": field, "value": value}) from None


def _apply_fields(channel: Channel, fields: Mapping) -> None:
    unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown channel fields: {', '.join(unknown)}", {"unknown": unknown})

    for key, value in fields.items():
        if key in ("start_date", "end_date"):
            value = _as_date(value, key)
        elif key == "name":
            if not value or not str(value).strip():
                raise ValidationError("Channel name is required", {"field": "name"})
            value = str(value).strip()
        elif key == "sales_target_cents" and value is not None:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError("sales_target_cents must be a non-negative integer", {"field": key})
        setattr(channel, key, value)

    if channel.start_date and channel.end_date and channel.end_date < channel.start_date:
        raise ValidationError("End date is before start date", {"start_date": str(channel.start_date), "end_date": str(channel.end_date)})


def _replace_staff(channel: Channel, staff: Iterable[Mapping]) -> list[StaffAssignment]:
    """
    Replace all assignments. When anyone is assigned, exactly one must be main.
    An optional commission_override_cents replaces the staff member's own
    commission rate for this channel.
    """
    selections = list(staff)
    staff_ids = [s.get("staff_id") for s in selections]
    if len(set(staff_ids)) != len(staff_ids):
        raise ValidationError("A staff member is listed more than once")
    mains = [s for s in selections if s.get("is_main")]
    if selections and len(mains) != 1:
        raise ValidationError(
            "Exactly one staff member must be marked as main",
            {"main_count": len(mains)},
        )

    found = {
        s.id: s
        for s in db.session.query(Staff).filter(Staff.id.in_(staff_ids), Staff.is_active.is_(True)).all()
    } if staff_ids else {}
    missing = [sid for sid in staff_ids if sid not in found]
    if missing:
        raise NotFoundError("Staff not found or inactive", {"staff_ids": missing})

    for s in selections:
        override = s.get("commission_override_cents")
        if override is not None and (isinstance(override, bool) or not isinstance(override, int) or override < 0):
            raise ValidationError(
                "commission_override_cents must be a non-negative integer",
                {"staff_id": s.get("staff_id")},
            )

    channel.staff_assignments.clear()
    db.session.flush()
    for s in selections:
        channel.staff_assignments.append(StaffAssignment(
            staff_id=s["staff_id"],
            is_main=bool(s.get("is_main")),
            commission_override_cents=s.get("commission_override_cents"),
        ))
    db.session.flush()
    return list(channel.staff_assignments)


def _submit_locked(channel: Channel) -> None:
    apply_channel_transition(channel, ChannelStatus.PENDING_APPROVAL)
    for req in channel.stock_requests:
        if req.request_type == "INITIAL" and req.status == StockRequestStatus.DRAFT.value:
            apply_stock_request_transition(req, StockRequestStatus.SUBMITTED)


# =============================================================================
# Creation and editing
# =============================================================================

def create_channel(
    *,
    name: str,
    channel_type: str = "EVENT",
    staff: Iterable[Mapping] = (),
    initial_request: Optional[Mapping] = None,
    submit: bool = False,
    actor: Optional[str] = None,
    **fields,
) -> ServiceResult[Channel]:
    """
    Create a draft channel with its code, staff and optional INITIAL request.

    initial_request: {"total_quantity"?, "items"?: [{"barcode", "quantity", ...}], "notes"?}
    """
    staff = list(staff)

    def _op():
        if channel_type not in CHANNEL_TYPES:
            raise ValidationError(f"Unknown channel type: {channel_type}", {"type": channel_type})

        channel = Channel(
            code=next_channel_code(channel_type),
            type=channel_type,
            name="",
            status=ChannelStatus.DRAFT.value,
            payment_status=PaymentStatus.NONE.value,
            created_by=actor,
        )
        _apply_fields(channel, {"name": name, **fields})
        db.session.add(channel)
        db.session.flush()

        if staff:
            _replace_staff(channel, staff)
        if initial_request:
            build_stock_request(
                channel,
                request_type="INITIAL",
                total_quantity=initial_request.get("total_quantity"),
                items=initial_request.get("items") or (),
                notes=initial_request.get("notes"),
                actor=actor,
            )

        append_event_log(
            channel_id=channel.id,
            action="channel_created",
            changed_by=actor,
            details={"code": channel.code, "type": channel.type},
        )
        if submit:
            _submit_locked(channel)
            append_event_log(channel_id=channel.id, action="channel_submitted", changed_by=actor)
        return channel

    return run_atomic(_op, label="create_channel")


def update_channel(channel_id: int, *, actor: Optional[str] = None, **fields) -> ServiceResult[Channel]:
    def _op():
        channel = _load_channel(channel_id)
        if channel.status != ChannelStatus.DRAFT.value:
            raise GuardFailedError("Only draft channels can be edited", {"status": channel.status})
        _apply_fields(channel, fields)
        db.session.flush()
        append_event_log(
            channel_id=channel.id,
            action="channel_updated",
            changed_by=actor,
            details={"fields": sorted(fields)},
        )
        return channel

    return run_atomic(_op, label="update_channel")


def assign_staff(channel_id: int, staff: Iterable[Mapping], *, actor: Optional[str] = None) -> ServiceResult[list[StaffAssignment]]:
    staff = list(staff)

    def _op():
        channel = _load_channel(channel_id)
        if channel.status in (ChannelStatus.COMPLETED.value, ChannelStatus.CANCELLED.value):
            raise GuardFailedError(f"Cannot change staff on a {channel.status} channel")
        assignments = _replace_staff(channel, staff)
        append_event_log(
            channel_id=channel.id,
            action="staff_assigned",
            changed_by=actor,
            details={
                "staff_ids": [a.staff_id for a in assignments],
                "main_staff_id": next((a.staff_id for a in assignments if a.is_main), None),
            },
        )
        return assignments

    return run_atomic(_op, label="assign_staff")


# =============================================================================
# Approval
# =============================================================================

def submit_channel(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        channel = _load_channel(channel_id)
        _submit_locked(channel)
        append_event_log(channel_id=channel.id, action="channel_submitted", changed_by=actor)
        return channel

    return run_atomic(_op, label="submit_channel")


def approve_channel(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    """pending_approval -> approved; submitted INITIAL requests are approved with it."""
    def _op():
        channel = _load_channel(channel_id)
        apply_channel_transition(channel, ChannelStatus.APPROVED)
        approved = []
        for req in channel.stock_requests:
            if req.request_type == "INITIAL" and req.status == StockRequestStatus.SUBMITTED.value:
                approve_request_locked(req, actor)
                approved.append(req.id)
        append_event_log(
            channel_id=channel.id,
            action="channel_approved",
            changed_by=actor,
            details={"approved_stock_request_ids": approved},
        )
        return channel

    return run_atomic(_op, label="approve_channel")


def reject_channel(channel_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"field": "reason"})
        channel = _load_channel(channel_id)
        if channel.status != ChannelStatus.PENDING_APPROVAL.value:
            raise GuardFailedError("Only channels pending approval can be rejected", {"status": channel.status})
        apply_channel_transition(channel, ChannelStatus.DRAFT)
        append_event_log(
            channel_id=channel.id,
            action="channel_rejected",
            changed_by=actor,
            details={"reason": reason.strip()},
        )
        return channel

    return run_atomic(_op, label="reject_channel")


def start_packing(channel_id: int, *, allow_partial: bool = False, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        channel = _load_channel(channel_id)
        apply_channel_transition(channel, ChannelStatus.PACKING, allow_partial=allow_partial)
        append_event_log(
            channel_id=channel.id,
            action="packing_started",
            changed_by=actor,
            details={"allow_partial": allow_partial},
        )
        return channel

    return run_atomic(_op, label="start_packing")


# =============================================================================
# Close-out and return (EVENT channels)
# =============================================================================

def close_channel_stock(
    channel_id: int,
    counts: Optional[Mapping[str, Mapping]] = None,
    *,
    actor: Optional[str] = None,
) -> ServiceResult[ReturnSummary]:
    """
    active -> pending_return. Snapshot every barcode into a ReturnSummary.

    counts maps barcode -> {"damaged": n, "missing": n}; barcodes left out
    close with zero damaged and missing. stock_ledger.close_out corrects a
    barcode's counts until the return ships.
    """
    counts = dict(counts or {})

    def _op():
        channel = _load_channel(channel_id)
        require_channel_transition(channel, ChannelStatus.PENDING_RETURN)

        rows = channel_stock(channel.id)
        unknown = sorted(set(counts) - {row.barcode for row in rows})
        if unknown:
            raise ValidationError(f"No stock at this channel for: {', '.join(unknown)}", {"unknown": unknown})

        summary = ReturnSummary(channel_id=channel.id, created_by=actor)
        db.session.add(summary)
        db.session.flush()

        for row in rows:
            entry = counts.get(row.barcode) or {}
            apply_close_out(
                summary,
                row.barcode,
                damaged=entry.get("damaged", 0),
                missing=entry.get("missing", 0),
            )
        apply_channel_transition(channel, ChannelStatus.PENDING_RETURN)

        append_event_log(
            channel_id=channel.id,
            action="channel_stock_closed",
            changed_by=actor,
            details={
                "summary_id": summary.id,
                "remaining_total": summary.remaining_total_quantity,
                "damaged_total": sum(i.damaged_quantity for i in summary.items),
                "missing_total": sum(i.missing_quantity for i in summary.items),
            },
        )
        return summary

    return run_atomic(_op, label="close_channel_stock")


def create_return_shipment(
    channel_id: int,
    provider: str,
    *,
    tracking_number: Optional[str] = None,
    actor: Optional[str] = None,
) -> ServiceResult[Shipment]:
    def _op():
        if not provider or not provider.strip():
            raise ValidationError("Shipping provider is required", {"field": "provider"})
        channel = _load_channel(channel_id)
        require_channel_transition(channel, ChannelStatus.RETURNING)
        summary = open_return_summary(channel.id)
        if summary is None:
            raise NotFoundError("No open return summary for this channel", {"channel_id": channel.id})

        shipment = Shipment(
            direction="RETURN",
            return_summary_id=summary.id,
            provider=provider.strip(),
            tracking_number=(tracking_number or "").strip() or None,
            total_quantity=summary.remaining_total_quantity,
            shipped_by=actor,
        )
        db.session.add(shipment)
        db.session.flush()
        apply_channel_transition(channel, ChannelStatus.RETURNING)

        append_event_log(
            channel_id=channel.id,
            action="return_shipped",
            changed_by=actor,
            details={
                "shipment_id": shipment.id,
                "provider": shipment.provider,
                "tracking_number": shipment.tracking_number,
                "total_quantity": shipment.total_quantity,
            },
        )
        return shipment

    return run_atomic(_op, label="create_return_shipment")


def confirm_return_received(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[ReturnSummary]:
    """returning -> returned; the remaining quantities go back into the warehouse pool."""
    def _op():
        channel = _load_channel(channel_id)
        require_channel_transition(channel, ChannelStatus.RETURNED)
        summary = open_return_summary(channel.id)
        if summary is None:
            raise NotFoundError("No open return summary for this channel", {"channel_id": channel.id})
        apply_return_confirmation(summary, actor=actor)
        apply_channel_transition(channel, ChannelStatus.RETURNED)
        append_event_log(
            channel_id=channel.id,
            action="return_confirmed",
            changed_by=actor,
            details={"summary_id": summary.id, "remaining_total": summary.remaining_total_quantity},
        )
        return summary

    return run_atomic(_op, label="confirm_return_received")


# =============================================================================
# Expenses and payment track
# =============================================================================

def _require_open_payment(channel: Channel) -> None:
    if channel.payment_status != PaymentStatus.NONE.value:
        raise GuardFailedError(
            "Expenses are locked once payment has been submitted",
            {"payment_status": channel.payment_status},
        )


def add_expense(
    channel_id: int,
    *,
    category: str,
    amount_cents: int,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> ServiceResult[ChannelExpense]:
    def _op():
        channel = _load_channel(channel_id)
        _require_open_payment(channel)
        if not category or not category.strip():
            raise ValidationError("Expense category is required", {"field": "category"})
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("Expense amount must be a positive integer", {"field": "amount_cents"})
        expense = ChannelExpense(
            channel_id=channel.id,
            category=category.strip(),
            amount_cents=amount_cents,
            description=description,
            created_by=actor,
        )
        db.session.add(expense)
        db.session.flush()
        append_event_log(
            channel_id=channel.id,
            action="expense_added",
            changed_by=actor,
            details={"expense_id": expense.id, "category": expense.category, "amount_cents": amount_cents},
        )
        return expense

    return run_atomic(_op, label="add_expense")


def remove_expense(expense_id: int, *, actor: Optional[str] = None) -> ServiceResult[None]:
    def _op():
        expense = db.session.query(ChannelExpense).filter_by(id=expense_id).first()
        if not expense:
            raise NotFoundError("Expense not found", {"expense_id": expense_id})
        channel = _load_channel(expense.channel_id)
        _require_open_payment(channel)
        db.session.delete(expense)
        append_event_log(
            channel_id=channel.id,
            action="expense_removed",
            changed_by=actor,
            details={"expense_id": expense_id, "amount_cents": expense.amount_cents},
        )
        return None

    return run_atomic(_op, label="remove_expense")


def submit_payment(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        channel = _load_channel(channel_id)
        apply_payment_transition(channel, PaymentStatus.PENDING_PAYMENT)
        append_event_log(
            channel_id=channel.id,
            action="payment_submitted",
            changed_by=actor,
            details={"expense_total_cents": expense_total(channel.id)},
        )
        return channel

    return run_atomic(_op, label="submit_payment")


def approve_payment(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        channel = _load_channel(channel_id)
        apply_payment_transition(channel, PaymentStatus.PAYMENT_APPROVED)
        append_event_log(channel_id=channel.id, action="payment_approved", changed_by=actor)
        return channel

    return run_atomic(_op, label="approve_payment")


def reject_payment(channel_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    def _op():
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"field": "reason"})
        channel = _load_channel(channel_id)
        if channel.payment_status != PaymentStatus.PENDING_PAYMENT.value:
            raise GuardFailedError("Only pending payments can be rejected", {"payment_status": channel.payment_status})
        apply_payment_transition(channel, PaymentStatus.NONE)
        append_event_log(
            channel_id=channel.id,
            action="payment_rejected",
            changed_by=actor,
            details={"reason": reason.strip()},
        )
        return channel

    return run_atomic(_op, label="reject_payment")


# =============================================================================
# Completion and cancellation
# =============================================================================

def complete_channel(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    """returned -> completed (EVENT) or active -> completed (BRANCH), once payment is approved."""
    def _op():
        channel = _load_channel(channel_id)
        apply_channel_transition(channel, ChannelStatus.COMPLETED)
        append_event_log(channel_id=channel.id, action="channel_completed", changed_by=actor)
        return channel

    return run_atomic(_op, label="complete_channel")


def cancel_channel(channel_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[Channel]:
    """
    Cancel before anything ships. Open requests are cancelled with the
    channel; allocated or packed goods must be released first.
    """
    def _op():
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", {"field": "reason"})
        channel = _load_channel(channel_id)

        committed = [
            r.id for r in channel.stock_requests
            if r.status in (StockRequestStatus.ALLOCATED.value, StockRequestStatus.PACKED.value)
        ]
        if committed:
            raise GuardFailedError(
                "Release allocated stock requests before cancelling the channel",
                {"stock_request_ids": committed},
            )

        apply_channel_transition(channel, ChannelStatus.CANCELLED)
        channel.cancel_reason = reason.strip()
        for req in channel.stock_requests:
            if req.status in (
                StockRequestStatus.DRAFT.value,
                StockRequestStatus.SUBMITTED.value,
                StockRequestStatus.APPROVED.value,
            ):
                apply_stock_request_transition(req, StockRequestStatus.CANCELLED)
                req.cancelled_by = actor
                req.cancel_reason = channel.cancel_reason
        db.session.flush()

        append_event_log(
            channel_id=channel.id,
            action="channel_cancelled",
            changed_by=actor,
            details={"reason": channel.cancel_reason},
        )
        return channel

    return run_atomic(_op, label="cancel_channel")


# =============================================================================
# Queries
# =============================================================================

def get_channel(channel_id: int) -> Optional[Channel]:
    return db.session.query(Channel).filter_by(id=channel_id).first()


def list_channels(*, status: Optional[str] = None, channel_type: Optional[str] = None) -> list[Channel]:
    query = db.session.query(Channel)
    if status:
        query = query.filter(Channel.status == status)
    if channel_type:
        query = query.filter(Channel.type == channel_type)
    return query.order_by(Channel.created_at.desc(), Channel.id.desc()).all()


def expense_total(channel_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(ChannelExpense.amount_cents), 0))
        .filter(ChannelExpense.channel_id == channel_id)
        .scalar()
    )
    return int(total)


def channel_overview(channel_id: int) -> Optional[dict]:
    """Channel plus the roll-ups a detail screen needs."""
    channel = get_channel(channel_id)
    if channel is None:
        return None
    data = channel.to_dict()
    data["staff"] = [a.to_dict() for a in channel.staff_assignments]
    data["stock_requests"] = [
        r.to_dict()
        for r in db.session.query(StockRequest).filter_by(channel_id=channel.id).order_by(StockRequest.id.asc()).all()
    ]
    data["stock"] = [row.to_dict() for row in channel_stock(channel.id)]
    data["sales"] = channel_sales_summary(channel.id)
    data["expense_total_cents"] = expense_total(channel.id)
    return data


def channel_compensation_summary(channel_id: int) -> Optional[dict]:
    """
    Per-staff pay for a channel: attended days times the daily rate, plus
    the commission rate per attended day. The assignment's override wins
    over the staff member's own commission rate.
    """
    channel = get_channel(channel_id)
    if channel is None:
        return None

    worked = days_worked(channel.id)
    rows = []
    for assignment in channel.staff_assignments:
        member = assignment.staff
        days = worked.get(assignment.staff_id, 0)
        daily_rate = member.daily_rate_cents or 0
        if assignment.commission_override_cents is not None:
            commission_rate = assignment.commission_override_cents
        else:
            commission_rate = member.commission_cents or 0
        wage = days * daily_rate
        commission = days * commission_rate
        rows.append({
            "staff_id": member.id,
            "name": member.name,
            "role": member.role,
            "is_main": assignment.is_main,
            "days_worked": days,
            "daily_rate_cents": daily_rate,
            "wage_cents": wage,
            "commission_rate_cents": commission_rate,
            "commission_cents": commission,
            "total_pay_cents": wage + commission,
        })

    return {
        "channel_id": channel.id,
        "channel_code": channel.code,
        "channel_name": channel.name,
        "total_sales_cents": channel_sales_summary(channel.id)["revenue_cents"],
        "staff": rows,
        "total_staff_cost_cents": sum(r["total_pay_cents"] for r in rows),
        "expense_total_cents": expense_total(channel.id),
    }
