# Overview: Per-(channel, barcode) quantity buckets and the conservation law.

from __future__ import annotations

from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConcurrencyConflictError,
    GuardFailedError,
    InsufficientStockError,
    LedgerInvariantViolation,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    Channel,
    ChannelStock,
    ReturnItem,
    ReturnSummary,
    StockMovement,
    WarehouseStock,
)
from ..time_utils import utcnow
from .event_log_service import append_event_log
from .results import ServiceResult
from .transaction import lock_for_update, run_atomic

"""
Stock ledger invariants (authoritative)

Per (channel, barcode), at every commit:

    received == sold + damaged + missing + returned + available

- available is the unprocessed on-hand quantity (remaining_unprocessed).
- Every mutation is a transfer between buckets, expressed as ONE conditional
  UPDATE so a concurrent transaction can never drive a bucket negative.
- Nothing outside this module writes ChannelStock quantity columns.

apply_* functions run inside a caller's unit of work and raise LedgerError
subclasses; the un-prefixed functions are the public, self-contained
operations returning ServiceResult.
"""

MOVEMENT_SHIP = "SHIP"
MOVEMENT_RECEIVING = "RECEIVING"
MOVEMENT_RETURN = "RETURN"

WAREHOUSE_LOCATION = "Main warehouse"

# Goods may only be booked in before the close-out snapshot is taken
RECEIVING_CHANNEL_STATUSES = ("shipped", "active")


def _require_quantity(qty, *, field: str = "quantity", allow_zero: bool = False) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": qty})
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError(
            f"{field} must be {'zero or more' if allow_zero else 'positive'}",
            {"field": field, "value": qty},
        )
    return qty


def _require_barcode(barcode) -> str:
    if not isinstance(barcode, str) or not barcode.strip():
        raise ValidationError("barcode is required", {"field": "barcode"})
    return barcode.strip()


def _load_channel(channel_id: int) -> Channel:
    channel = db.session.query(Channel).filter_by(id=channel_id).first()
    if not channel:
        raise NotFoundError("Channel not found", {"channel_id": channel_id})
    return channel


def require_receiving_channel(channel: Channel) -> None:
    if channel.status not in RECEIVING_CHANNEL_STATUSES:
        raise GuardFailedError(
            f"Cannot receive stock into a {channel.status} channel",
            {"channel_id": channel.id, "status": channel.status},
        )


def _current_available(channel_id: int, barcode: str) -> Optional[int]:
    """Committed available quantity as last seen by this transaction."""
    return (
        db.session.query(ChannelStock.available_quantity)
        .filter_by(channel_id=channel_id, barcode=barcode)
        .scalar()
    )


def _reload(channel_id: int, barcode: str) -> ChannelStock:
    return (
        db.session.query(ChannelStock)
        .filter_by(channel_id=channel_id, barcode=barcode)
        .populate_existing()
        .one()
    )


def _conditional_update(*criteria, **values) -> int:
    stmt = (
        update(ChannelStock)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount


def get_stock_row(channel_id: int, barcode: str) -> Optional[ChannelStock]:
    return db.session.query(ChannelStock).filter_by(channel_id=channel_id, barcode=barcode).first()


def open_stock_row(channel_id: int, barcode: str) -> ChannelStock:
    """Get or create the zeroed bucket row for (channel, barcode)."""
    row = get_stock_row(channel_id, barcode)
    if row:
        return row
    row = ChannelStock(channel_id=channel_id, barcode=barcode)
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise ConcurrencyConflictError(
            f"Stock row for {barcode} was opened concurrently; try again",
            {"channel_id": channel_id, "barcode": barcode},
        ) from exc
    return row


# =============================================================================
# Channel-scoped transfers
# =============================================================================

def apply_receive(channel_id: int, barcode: str, qty: int) -> ChannelStock:
    """Inbound goods: received += qty, available += qty."""
    barcode = _require_barcode(barcode)
    _require_quantity(qty)
    open_stock_row(channel_id, barcode)

    _conditional_update(
        ChannelStock.channel_id == channel_id,
        ChannelStock.barcode == barcode,
        received_quantity=ChannelStock.received_quantity + qty,
        available_quantity=ChannelStock.available_quantity + qty,
    )
    return _reload(channel_id, barcode)


def apply_sale(channel_id: int, barcode: str, qty: int) -> ChannelStock:
    """
    available -> sold.

    The decrement is a single conditional UPDATE (WHERE available >= qty).
    If this transaction saw enough stock but the UPDATE matched nothing, a
    concurrent sale won the race: ConcurrencyConflict, not InsufficientStock.
    """
    barcode = _require_barcode(barcode)
    _require_quantity(qty)

    seen = _current_available(channel_id, barcode)
    details = {"channel_id": channel_id, "barcode": barcode, "requested": qty, "available": seen or 0}
    if seen is None or seen < qty:
        raise InsufficientStockError(
            f"Insufficient stock for {barcode}: requested {qty}, available {seen or 0}",
            details,
        )

    matched = _conditional_update(
        ChannelStock.channel_id == channel_id,
        ChannelStock.barcode == barcode,
        ChannelStock.available_quantity >= qty,
        available_quantity=ChannelStock.available_quantity - qty,
        sold_quantity=ChannelStock.sold_quantity + qty,
    )
    if not matched:
        raise ConcurrencyConflictError(
            f"Stock for {barcode} changed while the sale was being recorded; reload and try again",
            details,
        )
    return _reload(channel_id, barcode)


def apply_sale_reversal(channel_id: int, barcode: str, qty: int) -> ChannelStock:
    """sold -> available. A reversal that would drive sold negative is a ledger bug."""
    barcode = _require_barcode(barcode)
    _require_quantity(qty)

    matched = _conditional_update(
        ChannelStock.channel_id == channel_id,
        ChannelStock.barcode == barcode,
        ChannelStock.sold_quantity >= qty,
        available_quantity=ChannelStock.available_quantity + qty,
        sold_quantity=ChannelStock.sold_quantity - qty,
    )
    if not matched:
        raise LedgerInvariantViolation(
            f"Reversing {qty} of {barcode} would drive sold quantity negative",
            {"channel_id": channel_id, "barcode": barcode, "quantity": qty},
        )
    return _reload(channel_id, barcode)


def apply_close_out(summary: ReturnSummary, barcode: str, damaged: int = 0, missing: int = 0) -> ReturnItem:
    """
    available -> damaged / missing; what is left stays available as the
    remaining quantity awaiting return.

    damaged and missing are the barcode's totals, not increments. A second
    call for the same (summary, barcode) amends the item: the earlier
    write-off goes back to available before the new one is taken.
    """
    barcode = _require_barcode(barcode)
    _require_quantity(damaged, field="damaged", allow_zero=True)
    _require_quantity(missing, field="missing", allow_zero=True)
    if summary.is_settled:
        raise GuardFailedError("Return already confirmed", {"summary_id": summary.id})

    row = get_stock_row(summary.channel_id, barcode)
    if row is None:
        raise NotFoundError(f"No stock for {barcode} at this channel", {"barcode": barcode})

    item = db.session.query(ReturnItem).filter_by(summary_id=summary.id, barcode=barcode).first()
    prior_damaged = item.damaged_quantity if item else 0
    prior_missing = item.missing_quantity if item else 0

    unsold = (_current_available(summary.channel_id, barcode) or 0) + prior_damaged + prior_missing
    if damaged + missing > unsold:
        raise ValidationError(
            f"Damaged + missing ({damaged + missing}) exceeds unsold stock for {barcode}",
            {"barcode": barcode, "damaged": damaged, "missing": missing, "unsold": unsold},
        )

    damaged_delta = damaged - prior_damaged
    missing_delta = missing - prior_missing
    if damaged_delta or missing_delta:
        written_off = damaged_delta + missing_delta
        matched = _conditional_update(
            ChannelStock.channel_id == summary.channel_id,
            ChannelStock.barcode == barcode,
            ChannelStock.available_quantity >= written_off,
            ChannelStock.damaged_quantity >= -damaged_delta,
            ChannelStock.missing_quantity >= -missing_delta,
            available_quantity=ChannelStock.available_quantity - written_off,
            damaged_quantity=ChannelStock.damaged_quantity + damaged_delta,
            missing_quantity=ChannelStock.missing_quantity + missing_delta,
        )
        if not matched:
            raise ConcurrencyConflictError(
                f"Stock for {barcode} changed during close-out; reload and try again",
                {"barcode": barcode},
            )

    row = _reload(summary.channel_id, barcode)
    if item is None:
        item = ReturnItem(summary=summary, barcode=barcode)
        db.session.add(item)
    item.sold_quantity = row.sold_quantity
    item.damaged_quantity = damaged
    item.missing_quantity = missing
    item.remaining_quantity = row.available_quantity
    db.session.flush()
    return item


def apply_return_confirmation(summary: ReturnSummary, *, actor: Optional[str] = None) -> ReturnSummary:
    """
    available -> returned for every ReturnItem, and the same quantity into
    the warehouse pool. Marks the summary settled.
    """
    if summary.is_settled:
        raise GuardFailedError("Return already confirmed", {"summary_id": summary.id})

    channel = _load_channel(summary.channel_id)
    for item in summary.items:
        qty = item.remaining_quantity
        if qty <= 0:
            continue
        matched = _conditional_update(
            ChannelStock.channel_id == summary.channel_id,
            ChannelStock.barcode == item.barcode,
            ChannelStock.available_quantity >= qty,
            available_quantity=ChannelStock.available_quantity - qty,
            returned_quantity=ChannelStock.returned_quantity + qty,
        )
        if not matched:
            raise LedgerInvariantViolation(
                f"Remaining quantity for {item.barcode} is no longer on hand",
                {"channel_id": summary.channel_id, "barcode": item.barcode, "remaining": qty},
            )
        apply_warehouse_delta(item.barcode, qty)
        record_movement(
            movement_type=MOVEMENT_RETURN,
            barcode=item.barcode,
            quantity=qty,
            from_location=channel.name,
            to_location=WAREHOUSE_LOCATION,
            channel_id=channel.id,
            reference_id=summary.id,
            notes=f"Return from {channel.code}",
        )

    summary.confirmed_at = utcnow()
    summary.confirmed_by = actor
    db.session.flush()
    return summary


# =============================================================================
# Warehouse pool and movements
# =============================================================================

def apply_warehouse_delta(barcode: str, delta: int, *, track_missing: bool = True) -> Optional[WarehouseStock]:
    """
    Adjust the central pool.

    Increments create the row on first use. Decrements only apply to
    tracked barcodes (track_missing=False skips untracked ones) and never
    take the pool below zero.
    """
    row = db.session.query(WarehouseStock).filter_by(barcode=barcode).first()
    if row is None:
        if delta < 0 and not track_missing:
            return None
        if delta < 0:
            raise InsufficientStockError(
                f"Warehouse holds no stock for {barcode}",
                {"barcode": barcode, "requested": -delta, "available": 0},
            )
        row = WarehouseStock(barcode=barcode, quantity=0)
        db.session.add(row)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Warehouse row for {barcode} was created concurrently; try again",
                {"barcode": barcode},
            ) from exc

    criteria = [WarehouseStock.id == row.id]
    if delta < 0:
        criteria.append(WarehouseStock.quantity >= -delta)
    stmt = (
        update(WarehouseStock)
        .where(*criteria)
        .values(quantity=WarehouseStock.quantity + delta)
        .execution_options(synchronize_session=False)
    )
    if not db.session.execute(stmt).rowcount:
        raise InsufficientStockError(
            f"Warehouse stock for {barcode} is below {-delta}",
            {"barcode": barcode, "requested": -delta},
        )
    return db.session.query(WarehouseStock).filter_by(id=row.id).populate_existing().one()


def record_movement(
    *,
    movement_type: str,
    barcode: str,
    quantity: int,
    from_location: Optional[str] = None,
    to_location: Optional[str] = None,
    channel_id: Optional[int] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    movement = StockMovement(
        movement_type=movement_type,
        barcode=barcode,
        quantity=quantity,
        from_location=from_location,
        to_location=to_location,
        channel_id=channel_id,
        reference_id=reference_id,
        notes=notes,
    )
    db.session.add(movement)
    return movement


def open_return_summary(channel_id: int) -> Optional[ReturnSummary]:
    return (
        db.session.query(ReturnSummary)
        .filter(ReturnSummary.channel_id == channel_id, ReturnSummary.confirmed_at.is_(None))
        .order_by(ReturnSummary.id.desc())
        .first()
    )


# =============================================================================
# Public operations
# =============================================================================

def receive(channel_id: int, barcode: str, qty: int, *, actor: Optional[str] = None) -> ServiceResult[ChannelStock]:
    def _op():
        channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
        if not channel:
            raise NotFoundError("Channel not found", {"channel_id": channel_id})
        require_receiving_channel(channel)
        row = apply_receive(channel_id, barcode, qty)
        append_event_log(
            channel_id=channel_id,
            action="stock_received",
            changed_by=actor,
            details={"barcode": row.barcode, "quantity": qty},
        )
        return row

    return run_atomic(_op, label="receive")


def sell(channel_id: int, barcode: str, qty: int) -> ServiceResult[ChannelStock]:
    def _op():
        _load_channel(channel_id)
        return apply_sale(channel_id, barcode, qty)

    return run_atomic(_op, label="sell")


def reverse_sale(channel_id: int, barcode: str, qty: int) -> ServiceResult[ChannelStock]:
    def _op():
        _load_channel(channel_id)
        return apply_sale_reversal(channel_id, barcode, qty)

    return run_atomic(_op, label="reverse_sale")


def close_out(
    channel_id: int,
    barcode: str,
    damaged: int = 0,
    missing: int = 0,
    *,
    actor: Optional[str] = None,
) -> ServiceResult[int]:
    """
    Record or correct close-out counts for one barcode on a channel awaiting
    return. Counts stay editable until the return shipment leaves.

    Returns the remaining quantity that will travel back to the warehouse.
    """
    def _op():
        channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
        if not channel:
            raise NotFoundError("Channel not found", {"channel_id": channel_id})
        if channel.status != "pending_return":
            raise GuardFailedError(
                "Close-out counts can only be recorded while the channel is pending return",
                {"status": channel.status},
            )
        summary = open_return_summary(channel_id)
        if summary is None:
            raise NotFoundError("No open return summary for this channel", {"channel_id": channel_id})
        item = apply_close_out(summary, barcode, damaged, missing)
        append_event_log(
            channel_id=channel_id,
            action="stock_closed_out",
            changed_by=actor,
            details={"barcode": item.barcode, "damaged": damaged, "missing": missing, "remaining": item.remaining_quantity},
        )
        return item.remaining_quantity

    return run_atomic(_op, label="close_out")


def confirm_return(channel_id: int, *, actor: Optional[str] = None) -> ServiceResult[ReturnSummary]:
    """
    Settle the channel's open return summary without moving the channel's
    status. Callers driving the lifecycle use
    channel_service.confirm_return_received instead.
    """
    def _op():
        _load_channel(channel_id)
        summary = open_return_summary(channel_id)
        if summary is None:
            raise NotFoundError("No open return summary for this channel", {"channel_id": channel_id})
        apply_return_confirmation(summary, actor=actor)
        append_event_log(
            channel_id=channel_id,
            action="return_confirmed",
            changed_by=actor,
            details={"summary_id": summary.id, "remaining_total": summary.remaining_total_quantity},
        )
        return summary

    return run_atomic(_op, label="confirm_return")


# =============================================================================
# Queries
# =============================================================================

def channel_stock(channel_id: int) -> list[ChannelStock]:
    return (
        db.session.query(ChannelStock)
        .filter_by(channel_id=channel_id)
        .order_by(ChannelStock.barcode.asc())
        .all()
    )


def audit_conservation(channel_id: Optional[int] = None) -> list[dict]:
    """Every (channel, barcode) row that breaks the conservation law or holds a negative bucket."""
    disposed = (
        ChannelStock.sold_quantity
        + ChannelStock.damaged_quantity
        + ChannelStock.missing_quantity
        + ChannelStock.returned_quantity
        + ChannelStock.available_quantity
    )
    query = db.session.query(ChannelStock).filter(
        or_(
            ChannelStock.received_quantity != disposed,
            ChannelStock.available_quantity < 0,
            ChannelStock.sold_quantity < 0,
        )
    )
    if channel_id is not None:
        query = query.filter(ChannelStock.channel_id == channel_id)

    violations = []
    for row in query.order_by(ChannelStock.channel_id.asc(), ChannelStock.barcode.asc()).all():
        entry = row.to_dict()
        entry["difference"] = row.received_quantity - (row.disposed_quantity + row.available_quantity)
        violations.append(entry)
    return violations
