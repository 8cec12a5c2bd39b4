# Overview: Lifecycle tables and guarded transitions for channels and stock requests.

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from ..errors import (
    GuardFailedError,
    InvalidTransitionError,
    LedgerInvariantViolation,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Channel, ChannelStock, ReturnSummary, Shipment, StockRequest
from ..time_utils import utcnow
from .event_log_service import append_event_log
from .results import ServiceResult
from .stock_ledger import open_return_summary, open_stock_row
from .transaction import lock_for_update, run_atomic


class ChannelStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PACKING = "packing"
    PACKED = "packed"
    SHIPPED = "shipped"
    ACTIVE = "active"
    PENDING_RETURN = "pending_return"
    RETURNING = "returning"
    RETURNED = "returned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    NONE = "none"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_APPROVED = "payment_approved"


class StockRequestStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    ALLOCATED = "allocated"
    PACKED = "packed"
    SHIPPED = "shipped"
    RECEIVED = "received"
    CANCELLED = "cancelled"


CHANNEL_TRANSITIONS: dict[ChannelStatus, frozenset[ChannelStatus]] = {
    ChannelStatus.DRAFT: frozenset({ChannelStatus.PENDING_APPROVAL, ChannelStatus.CANCELLED}),
    ChannelStatus.PENDING_APPROVAL: frozenset({ChannelStatus.APPROVED, ChannelStatus.DRAFT, ChannelStatus.CANCELLED}),
    ChannelStatus.APPROVED: frozenset({ChannelStatus.PACKING, ChannelStatus.CANCELLED}),
    ChannelStatus.PACKING: frozenset({ChannelStatus.PACKED, ChannelStatus.CANCELLED}),
    # packed -> packing when an allocation is released
    ChannelStatus.PACKED: frozenset({ChannelStatus.SHIPPED, ChannelStatus.PACKING, ChannelStatus.CANCELLED}),
    ChannelStatus.SHIPPED: frozenset({ChannelStatus.ACTIVE}),
    ChannelStatus.ACTIVE: frozenset({ChannelStatus.PENDING_RETURN, ChannelStatus.COMPLETED}),
    ChannelStatus.PENDING_RETURN: frozenset({ChannelStatus.RETURNING}),
    ChannelStatus.RETURNING: frozenset({ChannelStatus.RETURNED}),
    ChannelStatus.RETURNED: frozenset({ChannelStatus.COMPLETED}),
    ChannelStatus.COMPLETED: frozenset(),
    ChannelStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.NONE: frozenset({PaymentStatus.PENDING_PAYMENT}),
    PaymentStatus.PENDING_PAYMENT: frozenset({PaymentStatus.PAYMENT_APPROVED, PaymentStatus.NONE}),
    PaymentStatus.PAYMENT_APPROVED: frozenset(),
}

STOCK_REQUEST_TRANSITIONS: dict[StockRequestStatus, frozenset[StockRequestStatus]] = {
    StockRequestStatus.DRAFT: frozenset({StockRequestStatus.SUBMITTED, StockRequestStatus.CANCELLED}),
    StockRequestStatus.SUBMITTED: frozenset({StockRequestStatus.APPROVED, StockRequestStatus.CANCELLED}),
    StockRequestStatus.APPROVED: frozenset({StockRequestStatus.ALLOCATED, StockRequestStatus.CANCELLED}),
    # -> approved is release_allocation, the reversal path for committed goods
    StockRequestStatus.ALLOCATED: frozenset({StockRequestStatus.PACKED, StockRequestStatus.APPROVED}),
    StockRequestStatus.PACKED: frozenset({StockRequestStatus.SHIPPED, StockRequestStatus.APPROVED}),
    StockRequestStatus.SHIPPED: frozenset({StockRequestStatus.RECEIVED}),
    StockRequestStatus.RECEIVED: frozenset(),
    StockRequestStatus.CANCELLED: frozenset(),
}

# Goods-track states from which the payment track may be submitted
PAYABLE_CHANNEL_STATUSES = frozenset({
    ChannelStatus.ACTIVE,
    ChannelStatus.PENDING_RETURN,
    ChannelStatus.RETURNING,
    ChannelStatus.RETURNED,
})

# Stock-request states that count as "still in play" for channel roll-ups
_PACKED_OR_LATER = frozenset({StockRequestStatus.PACKED, StockRequestStatus.SHIPPED, StockRequestStatus.RECEIVED})
_SHIPPED_OR_LATER = frozenset({StockRequestStatus.SHIPPED, StockRequestStatus.RECEIVED})

# Request targets only the owning workflow operation may reach: each one
# carries a ledger or warehouse effect that a bare status change would skip.
_WORKFLOW_REQUEST_TARGETS = {
    StockRequestStatus.SHIPPED: "create_shipment",
    StockRequestStatus.RECEIVED: "confirm_receiving",
}
_RELEASABLE = frozenset({StockRequestStatus.ALLOCATED, StockRequestStatus.PACKED})

Entity = Union[Channel, StockRequest]


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown status: {value}", {"status": value}) from None


def _is_payment_target(target) -> bool:
    return target in {s.value for s in PaymentStatus}


def successors(entity: Entity) -> frozenset:
    if isinstance(entity, StockRequest):
        return STOCK_REQUEST_TRANSITIONS[StockRequestStatus(entity.status)]
    return CHANNEL_TRANSITIONS[ChannelStatus(entity.status)]


def can_transition(entity: Entity, target) -> bool:
    """
    Pure table lookup: is target a successor of the entity's current status?

    Guards are not evaluated here. For channels, payment-track targets
    (pending_payment, payment_approved, none) are checked against the
    payment table.
    """
    if isinstance(entity, StockRequest):
        try:
            target = StockRequestStatus(target)
        except ValueError:
            return False
        return target in STOCK_REQUEST_TRANSITIONS[StockRequestStatus(entity.status)]

    if isinstance(target, PaymentStatus) or _is_payment_target(target):
        return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(entity.payment_status)]
    try:
        target = ChannelStatus(target)
    except ValueError:
        return False
    return target in CHANNEL_TRANSITIONS[ChannelStatus(entity.status)]


def available_actions(entity: Entity) -> list[str]:
    """Every status the entity may move to next, goods and payment tracks together."""
    targets = [s.value for s in successors(entity)]
    if isinstance(entity, Channel):
        targets += [s.value for s in PAYMENT_TRANSITIONS[PaymentStatus(entity.payment_status)]]
    return sorted(targets)


# =============================================================================
# Guards
# =============================================================================

def open_initial_requests(channel: Channel) -> list[StockRequest]:
    return (
        db.session.query(StockRequest)
        .filter(
            StockRequest.channel_id == channel.id,
            StockRequest.request_type == "INITIAL",
            StockRequest.status != StockRequestStatus.CANCELLED.value,
        )
        .order_by(StockRequest.id.asc())
        .all()
    )


def _check_packing_guard(channel: Channel, allow_partial: bool) -> None:
    requests = open_initial_requests(channel)
    if not requests:
        raise GuardFailedError("Channel has no stock request to pack", {"channel_id": channel.id})

    for req in requests:
        if not req.is_allocated:
            raise GuardFailedError(
                "Stock request has not been allocated",
                {"stock_request_id": req.id, "status": req.status},
            )
        packed = req.packed_total_quantity
        if packed <= 0:
            raise GuardFailedError("Allocation is empty", {"stock_request_id": req.id})
        if packed < req.requested_total_quantity and not allow_partial:
            raise GuardFailedError(
                f"Allocated {packed} of {req.requested_total_quantity} requested; "
                "confirm partial packing to continue",
                {
                    "stock_request_id": req.id,
                    "packed_total_quantity": packed,
                    "requested_total_quantity": req.requested_total_quantity,
                },
            )


def _check_channel_guards(channel: Channel, current: ChannelStatus, target: ChannelStatus, allow_partial: bool) -> None:
    if current == ChannelStatus.APPROVED and target == ChannelStatus.PACKING:
        _check_packing_guard(channel, allow_partial)

    if target == ChannelStatus.PENDING_RETURN:
        if channel.type != "EVENT":
            raise GuardFailedError("Only event channels return stock to the warehouse", {"type": channel.type})
        _check_return_opened(channel)
    elif target == ChannelStatus.RETURNING:
        _check_return_shipped(channel)
    elif target == ChannelStatus.RETURNED:
        _check_return_settled(channel)

    if target == ChannelStatus.COMPLETED:
        if current == ChannelStatus.ACTIVE and channel.type != "BRANCH":
            raise GuardFailedError("Event channels must return their stock before completion", {"type": channel.type})
        if channel.payment_status != PaymentStatus.PAYMENT_APPROVED.value:
            raise GuardFailedError(
                "Payment must be approved before the channel can be completed",
                {"payment_status": channel.payment_status},
            )


def _stock_rows(channel: Channel) -> list[ChannelStock]:
    # Bucket columns are written by conditional UPDATEs that bypass the session
    return db.session.query(ChannelStock).filter_by(channel_id=channel.id).populate_existing().all()


def _check_return_opened(channel: Channel) -> None:
    """pending_return: nothing in transit, and every barcode closed out into an open summary."""
    in_transit = [
        r.id for r in channel.stock_requests
        if r.status == StockRequestStatus.SHIPPED.value
    ]
    if in_transit:
        raise GuardFailedError(
            "Receive stock that is still in transit before closing the channel",
            {"stock_request_ids": in_transit},
        )

    summary = open_return_summary(channel.id)
    if summary is None:
        raise GuardFailedError(
            "Close the channel's stock to open a return summary first",
            {"channel_id": channel.id, "operation": "close_channel_stock"},
        )
    closed = {item.barcode for item in summary.items}
    unclosed = sorted(row.barcode for row in _stock_rows(channel) if row.barcode not in closed)
    if unclosed:
        raise GuardFailedError(
            "Every barcode must be closed out before the channel awaits return",
            {"summary_id": summary.id, "barcodes": unclosed},
        )


def _check_return_shipped(channel: Channel) -> None:
    summary = open_return_summary(channel.id)
    shipment = (
        db.session.query(Shipment).filter_by(return_summary_id=summary.id).first()
        if summary is not None else None
    )
    if shipment is None:
        raise GuardFailedError(
            "The return needs a shipment before the channel is returning",
            {"channel_id": channel.id, "operation": "create_return_shipment"},
        )


def _check_return_settled(channel: Channel) -> None:
    """returned: the return summary is settled and nothing is left on hand."""
    settled = (
        db.session.query(ReturnSummary)
        .filter(ReturnSummary.channel_id == channel.id, ReturnSummary.confirmed_at.isnot(None))
        .first()
    )
    if settled is None or open_return_summary(channel.id) is not None:
        raise GuardFailedError(
            "The warehouse has not confirmed the return",
            {"channel_id": channel.id, "operation": "confirm_return_received"},
        )
    on_hand = sorted(row.barcode for row in _stock_rows(channel) if row.available_quantity > 0)
    if on_hand:
        raise LedgerInvariantViolation(
            "Stock is still on hand at a channel whose return was confirmed",
            {"channel_id": channel.id, "barcodes": on_hand},
        )


def _check_payment_guards(channel: Channel, target: PaymentStatus) -> None:
    if target == PaymentStatus.PENDING_PAYMENT and ChannelStatus(channel.status) not in PAYABLE_CHANNEL_STATUSES:
        raise GuardFailedError(
            "Payment can only be submitted once the channel has started selling",
            {"status": channel.status},
        )


def _open_channel_stock(channel: Channel) -> None:
    """Make sure every barcode delivered to the channel has a bucket row."""
    requests = (
        db.session.query(StockRequest)
        .filter(
            StockRequest.channel_id == channel.id,
            StockRequest.status.in_([StockRequestStatus.SHIPPED.value, StockRequestStatus.RECEIVED.value]),
        )
        .all()
    )
    for req in requests:
        for item in req.items:
            if item.packed_quantity or item.received_quantity:
                open_stock_row(channel.id, item.barcode)


# =============================================================================
# Apply (inside a unit of work)
# =============================================================================

def require_channel_transition(channel: Channel, target) -> ChannelStatus:
    """Table check only; workflow operations call it before doing their own writes."""
    target = _coerce(ChannelStatus, target)
    current = ChannelStatus(channel.status)
    if target not in CHANNEL_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move channel from {current.value} to {target.value}",
            {"channel_id": channel.id, "from": current.value, "to": target.value},
        )
    return target


def apply_channel_transition(channel: Channel, target, *, allow_partial: bool = False) -> Channel:
    if isinstance(target, PaymentStatus) or _is_payment_target(target):
        return apply_payment_transition(channel, target)

    current = ChannelStatus(channel.status)
    target = require_channel_transition(channel, target)
    _check_channel_guards(channel, current, target, allow_partial)

    channel.status = target.value
    if target == ChannelStatus.ACTIVE:
        _open_channel_stock(channel)
    elif target == ChannelStatus.COMPLETED:
        channel.completed_at = utcnow()
    elif target == ChannelStatus.CANCELLED:
        channel.cancelled_at = utcnow()
    db.session.flush()
    return channel


def apply_payment_transition(channel: Channel, target) -> Channel:
    target = _coerce(PaymentStatus, target)
    current = PaymentStatus(channel.payment_status)
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move payment from {current.value} to {target.value}",
            {"channel_id": channel.id, "from": current.value, "to": target.value},
        )
    _check_payment_guards(channel, target)
    channel.payment_status = target.value
    db.session.flush()
    return channel


def apply_stock_request_transition(request: StockRequest, target) -> StockRequest:
    target = _coerce(StockRequestStatus, target)
    current = StockRequestStatus(request.status)
    if target not in STOCK_REQUEST_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move stock request from {current.value} to {target.value}",
            {"stock_request_id": request.id, "from": current.value, "to": target.value},
        )

    if target == StockRequestStatus.PACKED and request.packed_total_quantity <= 0:
        raise GuardFailedError("Nothing has been allocated to pack", {"stock_request_id": request.id})

    request.status = target.value
    if target == StockRequestStatus.CANCELLED:
        request.cancelled_at = utcnow()
    elif target == StockRequestStatus.RECEIVED:
        request.received_at = utcnow()
    db.session.flush()
    return request


def _refuse_workflow_target(request: StockRequest, target) -> None:
    target = _coerce(StockRequestStatus, target)
    current = StockRequestStatus(request.status)
    if target not in STOCK_REQUEST_TRANSITIONS[current]:
        return
    operation = _WORKFLOW_REQUEST_TARGETS.get(target)
    if target == StockRequestStatus.APPROVED and current in _RELEASABLE:
        operation = "release_allocation"
    if operation:
        raise GuardFailedError(
            f"Use {operation} to move a stock request to {target.value}",
            {"stock_request_id": request.id, "to": target.value, "operation": operation},
        )


def sync_channel_with_requests(channel: Channel) -> Channel:
    """
    Roll a channel forward once its INITIAL requests catch up:
    packing -> packed when all are packed, packed -> shipped when all shipped.
    """
    requests = open_initial_requests(channel)
    if not requests:
        return channel
    statuses = {StockRequestStatus(r.status) for r in requests}

    if channel.status == ChannelStatus.PACKING.value and statuses <= _PACKED_OR_LATER:
        apply_channel_transition(channel, ChannelStatus.PACKED)
    if channel.status == ChannelStatus.PACKED.value and statuses <= _SHIPPED_OR_LATER:
        apply_channel_transition(channel, ChannelStatus.SHIPPED)
    return channel


# =============================================================================
# Public operations
# =============================================================================

def transition_channel(
    channel_id: int,
    target,
    *,
    actor: Optional[str] = None,
    allow_partial: bool = False,
) -> ServiceResult[Channel]:
    def _op():
        channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
        if not channel:
            raise NotFoundError("Channel not found", {"channel_id": channel_id})
        payment = isinstance(target, PaymentStatus) or _is_payment_target(target)
        before = channel.payment_status if payment else channel.status
        apply_channel_transition(channel, target, allow_partial=allow_partial)
        after = channel.payment_status if payment else channel.status
        append_event_log(
            channel_id=channel.id,
            action="payment_status_changed" if payment else "status_changed",
            changed_by=actor,
            details={"from": before, "to": after},
        )
        return channel

    return run_atomic(_op, label="transition_channel")


def transition_stock_request(request_id: int, target, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    """
    Plain status change for a stock request. Shipping, receiving and
    releasing an allocation are refused here (guard_failed); they go
    through their stock request service operations.
    """
    def _op():
        request = lock_for_update(db.session.query(StockRequest).filter_by(id=request_id)).first()
        if not request:
            raise NotFoundError("Stock request not found", {"stock_request_id": request_id})
        _refuse_workflow_target(request, target)
        before = request.status
        apply_stock_request_transition(request, target)
        append_event_log(
            channel_id=request.channel_id,
            action="stock_request_status_changed",
            changed_by=actor,
            details={"stock_request_id": request.id, "from": before, "to": request.status},
        )
        return request

    return run_atomic(_op, label="transition_stock_request")


def transition(entity: Entity, target, **kwargs) -> ServiceResult:
    """Dispatch on entity type; the entity is re-read inside the unit of work."""
    if isinstance(entity, StockRequest):
        kwargs.pop("allow_partial", None)
        return transition_stock_request(entity.id, target, **kwargs)
    return transition_channel(entity.id, target, **kwargs)
