# Overview: Warehouse-to-channel stock requests: approval, allocation, packing, shipment, receiving.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from ..errors import GuardFailedError, InvalidTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Channel, Product, Shipment, StockRequest, StockRequestItem
from ..time_utils import utcnow
from .event_log_service import append_event_log
from .results import ServiceResult
from .status_machine import (
    ChannelStatus,
    StockRequestStatus,
    apply_channel_transition,
    apply_stock_request_transition,
    sync_channel_with_requests,
)
from .stock_ledger import (
    MOVEMENT_RECEIVING,
    MOVEMENT_SHIP,
    WAREHOUSE_LOCATION,
    apply_receive,
    apply_warehouse_delta,
    record_movement,
    require_receiving_channel,
)
from .transaction import lock_for_update, run_atomic

REQUEST_TYPES = ("INITIAL", "TOPUP")

# Channel states in which an INITIAL request may still be raised
_INITIAL_REQUEST_CHANNEL_STATUSES = (
    ChannelStatus.DRAFT.value,
    ChannelStatus.PENDING_APPROVAL.value,
    ChannelStatus.APPROVED.value,
)

# Channel states that can still take delivery of a shipment
_SHIPPING_CHANNEL_STATUSES = (
    ChannelStatus.PACKING.value,
    ChannelStatus.PACKED.value,
    ChannelStatus.SHIPPED.value,
    ChannelStatus.ACTIVE.value,
)


@dataclass
class ReceivingReport:
    stock_request: StockRequest
    received_total: int = 0
    discrepancies: list[dict] = field(default_factory=list)

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    def to_dict(self) -> dict:
        return {
            "stock_request": self.stock_request.to_dict(),
            "received_total": self.received_total,
            "discrepancies": self.discrepancies,
        }


def _load_request(request_id: int) -> StockRequest:
    request = lock_for_update(db.session.query(StockRequest).filter_by(id=request_id)).first()
    if not request:
        raise NotFoundError("Stock request not found", {"stock_request_id": request_id})
    return request


def _load_channel(channel_id: int) -> Channel:
    channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
    if not channel:
        raise NotFoundError("Channel not found", {"channel_id": channel_id})
    return channel


def _int_at_least(value, minimum: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(
            f"{field_name} must be an integer of at least {minimum}",
            {"field": field_name, "value": value},
        )
    return value


def _require_reason(reason: Optional[str]) -> str:
    if not reason or not reason.strip():
        raise ValidationError("A reason is required", {"field": "reason"})
    return reason.strip()


def _require_status(request: StockRequest, *allowed: StockRequestStatus, action: str) -> None:
    if request.status not in {s.value for s in allowed}:
        raise InvalidTransitionError(
            f"Cannot {action} a stock request that is {request.status}",
            {"stock_request_id": request.id, "status": request.status},
        )


def resolve_product(key: str) -> Optional[Product]:
    """
    Look up a catalog product by barcode, falling back to a
    CODE-COLOR-SIZE key (the code itself may contain dashes).
    """
    key = (key or "").strip()
    if not key:
        return None
    product = db.session.query(Product).filter_by(barcode=key).first()
    if product:
        return product
    parts = key.rsplit("-", 2)
    if len(parts) != 3:
        return None
    code, color, size = parts
    return db.session.query(Product).filter_by(code=code, color=color, size=size).first()


def build_stock_request(
    channel: Channel,
    *,
    request_type: str = "INITIAL",
    total_quantity: Optional[int] = None,
    items: Iterable[Mapping] = (),
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> StockRequest:
    """Create a draft request inside the caller's unit of work."""
    if request_type not in REQUEST_TYPES:
        raise ValidationError(f"Unknown request type: {request_type}", {"request_type": request_type})
    if request_type == "TOPUP" and channel.status != ChannelStatus.ACTIVE.value:
        raise GuardFailedError("Top-up requests need an active channel", {"status": channel.status})
    if request_type == "INITIAL" and channel.status not in _INITIAL_REQUEST_CHANNEL_STATUSES:
        raise GuardFailedError("Initial stock can only be requested before packing starts", {"status": channel.status})

    lines: dict[str, dict] = {}
    for raw in items:
        barcode = (raw.get("barcode") or "").strip()
        if not barcode:
            raise ValidationError("barcode is required", {"field": "barcode"})
        qty = _int_at_least(raw.get("quantity"), 1, "quantity")
        line = lines.setdefault(barcode, {"quantity": 0, "size": None, "price_cents": None, "remarks": None})
        line["quantity"] += qty
        for key in ("size", "price_cents", "remarks"):
            if raw.get(key) is not None:
                line[key] = raw[key]

    line_total = sum(line["quantity"] for line in lines.values())
    if total_quantity is None:
        total_quantity = line_total
    _int_at_least(total_quantity, 1, "total_quantity")
    if total_quantity < line_total:
        raise ValidationError(
            "total_quantity is less than the sum of the requested lines",
            {"total_quantity": total_quantity, "line_total": line_total},
        )

    request = StockRequest(
        channel=channel,
        request_type=request_type,
        status=StockRequestStatus.DRAFT.value,
        requested_total_quantity=total_quantity,
        notes=notes,
        created_by=actor,
    )
    db.session.add(request)
    for barcode, line in lines.items():
        request.items.append(StockRequestItem(
            barcode=barcode,
            requested_quantity=line["quantity"],
            size=line["size"],
            price_cents=line["price_cents"],
            remarks=line["remarks"],
        ))
    db.session.flush()
    return request


def approve_request_locked(request: StockRequest, actor: Optional[str]) -> StockRequest:
    apply_stock_request_transition(request, StockRequestStatus.APPROVED)
    request.approved_by = actor
    request.approved_at = utcnow()
    return request


def _reset_allocation(request: StockRequest, keep: Iterable[str] = ()) -> None:
    keep = set(keep)
    for item in list(request.items):
        if item.barcode in keep:
            continue
        if item.requested_quantity == 0:
            # Allocation-only line; delete-orphan removes the row
            request.items.remove(item)
        else:
            item.packed_quantity = None


def _check_over_allocation(request: StockRequest, packed_total: int, allow_over_allocation: bool) -> None:
    if packed_total > request.requested_total_quantity and not allow_over_allocation:
        raise GuardFailedError(
            f"Total packed quantity ({packed_total}) exceeds requested quantity "
            f"({request.requested_total_quantity}); an override is required",
            {"packed_total_quantity": packed_total, "requested_total_quantity": request.requested_total_quantity},
        )


# =============================================================================
# Request lifecycle
# =============================================================================

def create_request(
    channel_id: int,
    *,
    request_type: str = "INITIAL",
    total_quantity: Optional[int] = None,
    items: Iterable[Mapping] = (),
    notes: Optional[str] = None,
    submit: bool = False,
    actor: Optional[str] = None,
) -> ServiceResult[StockRequest]:
    items = list(items)

    def _op():
        channel = _load_channel(channel_id)
        request = build_stock_request(
            channel,
            request_type=request_type,
            total_quantity=total_quantity,
            items=items,
            notes=notes,
            actor=actor,
        )
        if submit:
            apply_stock_request_transition(request, StockRequestStatus.SUBMITTED)
        append_event_log(
            channel_id=channel.id,
            action="stock_request_created",
            changed_by=actor,
            details={
                "stock_request_id": request.id,
                "request_type": request.request_type,
                "requested_total_quantity": request.requested_total_quantity,
                "status": request.status,
            },
        )
        return request

    return run_atomic(_op, label="create_request")


def submit_request(request_id: int, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    def _op():
        request = _load_request(request_id)
        apply_stock_request_transition(request, StockRequestStatus.SUBMITTED)
        append_event_log(
            channel_id=request.channel_id,
            action="stock_request_submitted",
            changed_by=actor,
            details={"stock_request_id": request.id},
        )
        return request

    return run_atomic(_op, label="submit_request")


def approve_request(request_id: int, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    """Approving an INITIAL request also approves a channel still pending approval."""
    def _op():
        request = _load_request(request_id)
        channel = _load_channel(request.channel_id)
        approve_request_locked(request, actor)
        if request.request_type == "INITIAL" and channel.status == ChannelStatus.PENDING_APPROVAL.value:
            apply_channel_transition(channel, ChannelStatus.APPROVED)
        append_event_log(
            channel_id=request.channel_id,
            action="stock_request_approved",
            changed_by=actor,
            details={"stock_request_id": request.id, "channel_status": channel.status},
        )
        return request

    return run_atomic(_op, label="approve_request")


def reject_request(request_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    def _op():
        request = _load_request(request_id)
        _require_status(request, StockRequestStatus.SUBMITTED, action="reject")
        reason_text = _require_reason(reason)
        apply_stock_request_transition(request, StockRequestStatus.CANCELLED)
        request.cancelled_by = actor
        request.cancel_reason = reason_text
        append_event_log(
            channel_id=request.channel_id,
            action="stock_request_rejected",
            changed_by=actor,
            details={"stock_request_id": request.id, "reason": reason_text},
        )
        return request

    return run_atomic(_op, label="reject_request")


def cancel_request(request_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    """
    Cancel a request whose goods are not yet committed.

    Allocated or packed requests must go through release_allocation first.
    """
    def _op():
        request = _load_request(request_id)
        reason_text = _require_reason(reason)
        if request.status in (StockRequestStatus.ALLOCATED.value, StockRequestStatus.PACKED.value):
            raise InvalidTransitionError(
                "Goods are already allocated; release the allocation before cancelling",
                {"stock_request_id": request.id, "status": request.status},
            )
        apply_stock_request_transition(request, StockRequestStatus.CANCELLED)
        request.cancelled_by = actor
        request.cancel_reason = reason_text
        sync_channel_with_requests(_load_channel(request.channel_id))
        append_event_log(
            channel_id=request.channel_id,
            action="stock_request_cancelled",
            changed_by=actor,
            details={"stock_request_id": request.id, "reason": reason_text},
        )
        return request

    return run_atomic(_op, label="cancel_request")


# =============================================================================
# Warehouse allocation
# =============================================================================

def upload_allocation(
    request_id: int,
    rows: Iterable[Mapping],
    *,
    allow_over_allocation: bool = False,
    actor: Optional[str] = None,
) -> ServiceResult[StockRequest]:
    """
    Replace the request's allocation with the uploaded rows.

    Each row: {"barcode", "packed_quantity", "price_cents"?, "size"?}; the
    barcode may be a real barcode or a CODE-COLOR-SIZE catalog key.
    """
    rows = list(rows)

    def _op():
        request = _load_request(request_id)
        _require_status(request, StockRequestStatus.APPROVED, StockRequestStatus.ALLOCATED, action="allocate")
        if not rows:
            raise ValidationError("Allocation upload has no rows")

        unknown = []
        allocation: dict[str, dict] = {}
        for row in rows:
            key = row.get("barcode")
            qty = _int_at_least(row.get("packed_quantity"), 1, "packed_quantity")
            product = resolve_product(key)
            if product is None:
                unknown.append(key)
                continue
            line = allocation.setdefault(product.barcode, {"quantity": 0, "product": product, "row": row})
            line["quantity"] += qty
            line["row"] = row
        if unknown:
            raise ValidationError(f"Products not found: {', '.join(str(k) for k in unknown)}", {"unknown": unknown})

        packed_total = sum(line["quantity"] for line in allocation.values())
        _check_over_allocation(request, packed_total, allow_over_allocation)

        _reset_allocation(request, keep=allocation.keys())
        by_barcode = {item.barcode: item for item in request.items}
        for barcode, line in allocation.items():
            item = by_barcode.get(barcode)
            if item is None:
                item = StockRequestItem(barcode=barcode, requested_quantity=0)
                request.items.append(item)
            item.packed_quantity = line["quantity"]
            item.size = line["row"].get("size") or item.size or line["product"].size
            price = line["row"].get("price_cents")
            item.price_cents = price if price is not None else (item.price_cents or line["product"].price_cents)

        if request.status == StockRequestStatus.APPROVED.value:
            apply_stock_request_transition(request, StockRequestStatus.ALLOCATED)
        db.session.flush()

        append_event_log(
            channel_id=request.channel_id,
            action="allocation_uploaded",
            changed_by=actor,
            details={
                "stock_request_id": request.id,
                "line_count": len(allocation),
                "packed_total_quantity": packed_total,
                "over_allocated": packed_total > request.requested_total_quantity,
            },
        )
        return request

    return run_atomic(_op, label="upload_allocation")


def update_allocation(
    request_id: int,
    barcode: str,
    packed_quantity: int,
    *,
    allow_over_allocation: bool = False,
    actor: Optional[str] = None,
) -> ServiceResult[StockRequestItem]:
    def _op():
        request = _load_request(request_id)
        _require_status(request, StockRequestStatus.APPROVED, StockRequestStatus.ALLOCATED, action="edit the allocation of")
        qty = _int_at_least(packed_quantity, 0, "packed_quantity")
        product = resolve_product(barcode)
        if product is None:
            raise ValidationError(f"Products not found: {barcode}", {"unknown": [barcode]})

        item = next((i for i in request.items if i.barcode == product.barcode), None)
        if item is None:
            item = StockRequestItem(barcode=product.barcode, requested_quantity=0, size=product.size, price_cents=product.price_cents)
            request.items.append(item)
        previous = item.packed_quantity
        item.packed_quantity = qty

        _check_over_allocation(request, request.packed_total_quantity, allow_over_allocation)
        if request.status == StockRequestStatus.APPROVED.value:
            apply_stock_request_transition(request, StockRequestStatus.ALLOCATED)
        db.session.flush()

        append_event_log(
            channel_id=request.channel_id,
            action="allocation_updated",
            changed_by=actor,
            details={"stock_request_id": request.id, "barcode": item.barcode, "from": previous, "to": qty},
        )
        return item

    return run_atomic(_op, label="update_allocation")


def release_allocation(request_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    """
    Reversal path for committed-but-unshipped goods: allocated/packed -> approved,
    packed quantities cleared. The request can then be re-allocated or cancelled.
    """
    def _op():
        request = _load_request(request_id)
        reason_text = _require_reason(reason)
        channel = _load_channel(request.channel_id)
        released = request.packed_total_quantity

        apply_stock_request_transition(request, StockRequestStatus.APPROVED)
        _reset_allocation(request)
        if request.request_type == "INITIAL" and channel.status == ChannelStatus.PACKED.value:
            apply_channel_transition(channel, ChannelStatus.PACKING)
        db.session.flush()

        append_event_log(
            channel_id=request.channel_id,
            action="allocation_released",
            changed_by=actor,
            details={"stock_request_id": request.id, "released_quantity": released, "reason": reason_text},
        )
        return request

    return run_atomic(_op, label="release_allocation")


# =============================================================================
# Packing, shipment, receiving
# =============================================================================

def confirm_packing(request_id: int, *, allow_partial: bool = False, actor: Optional[str] = None) -> ServiceResult[StockRequest]:
    def _op():
        request = _load_request(request_id)
        channel = _load_channel(request.channel_id)
        _require_status(request, StockRequestStatus.ALLOCATED, action="pack")

        packed = request.packed_total_quantity
        if packed < request.requested_total_quantity and not allow_partial:
            raise GuardFailedError(
                f"Allocated {packed} of {request.requested_total_quantity} requested; "
                "confirm partial packing to continue",
                {"packed_total_quantity": packed, "requested_total_quantity": request.requested_total_quantity},
            )

        if request.request_type == "INITIAL" and channel.status == ChannelStatus.APPROVED.value:
            apply_channel_transition(channel, ChannelStatus.PACKING, allow_partial=allow_partial)
        apply_stock_request_transition(request, StockRequestStatus.PACKED)
        sync_channel_with_requests(channel)

        append_event_log(
            channel_id=request.channel_id,
            action="packing_confirmed",
            changed_by=actor,
            details={"stock_request_id": request.id, "packed_total_quantity": packed, "channel_status": channel.status},
        )
        return request

    return run_atomic(_op, label="confirm_packing")


def create_shipment(
    request_id: int,
    provider: str,
    *,
    tracking_number: Optional[str] = None,
    actor: Optional[str] = None,
) -> ServiceResult[Shipment]:
    """Hand packed goods to a carrier; tracked warehouse stock is decremented here."""
    def _op():
        request = _load_request(request_id)
        channel = _load_channel(request.channel_id)
        if not provider or not provider.strip():
            raise ValidationError("Shipping provider is required", {"field": "provider"})
        if channel.status not in _SHIPPING_CHANNEL_STATUSES:
            raise GuardFailedError(
                f"Cannot ship stock to a {channel.status} channel",
                {"channel_id": channel.id, "status": channel.status},
            )
        apply_stock_request_transition(request, StockRequestStatus.SHIPPED)

        shipment = Shipment(
            direction="OUTBOUND",
            stock_request_id=request.id,
            provider=provider.strip(),
            tracking_number=(tracking_number or "").strip() or None,
            total_quantity=request.packed_total_quantity,
            shipped_by=actor,
        )
        db.session.add(shipment)

        for item in request.items:
            if not item.packed_quantity:
                continue
            apply_warehouse_delta(item.barcode, -item.packed_quantity, track_missing=False)
            record_movement(
                movement_type=MOVEMENT_SHIP,
                barcode=item.barcode,
                quantity=item.packed_quantity,
                from_location=WAREHOUSE_LOCATION,
                to_location=channel.name,
                channel_id=channel.id,
                reference_id=request.id,
                notes=f"Shipment to {channel.code}",
            )

        sync_channel_with_requests(channel)
        db.session.flush()

        append_event_log(
            channel_id=channel.id,
            action="shipment_created",
            changed_by=actor,
            details={
                "stock_request_id": request.id,
                "shipment_id": shipment.id,
                "provider": shipment.provider,
                "tracking_number": shipment.tracking_number,
                "total_quantity": shipment.total_quantity,
            },
        )
        return shipment

    return run_atomic(_op, label="create_shipment")


def confirm_receiving(
    request_id: int,
    received: Optional[Mapping[str, int]] = None,
    *,
    actor: Optional[str] = None,
) -> ServiceResult[ReceivingReport]:
    """
    Book goods into the channel ledger.

    received maps barcode -> counted quantity; barcodes left out are taken
    as received in full. Differences from the packed quantity are reported,
    not blocked. A shipped channel becomes active. Once the channel has
    been closed out nothing more can be received into it.
    """
    received = dict(received or {})

    def _op():
        request = _load_request(request_id)
        channel = _load_channel(request.channel_id)
        apply_stock_request_transition(request, StockRequestStatus.RECEIVED)
        require_receiving_channel(channel)

        by_barcode = {item.barcode: item for item in request.items}
        unknown = sorted(set(received) - set(by_barcode))
        if unknown:
            raise ValidationError(
                f"Barcodes not on this shipment: {', '.join(unknown)}",
                {"unknown": unknown},
            )

        report = ReceivingReport(stock_request=request)
        for item in request.items:
            packed = item.packed_quantity or 0
            if packed == 0 and item.barcode not in received:
                continue
            qty = _int_at_least(received.get(item.barcode, packed), 0, "received_quantity")
            item.received_quantity = qty
            if qty != packed:
                report.discrepancies.append({
                    "barcode": item.barcode,
                    "packed_quantity": packed,
                    "received_quantity": qty,
                    "difference": qty - packed,
                })
            if qty > 0:
                apply_receive(channel.id, item.barcode, qty)
                record_movement(
                    movement_type=MOVEMENT_RECEIVING,
                    barcode=item.barcode,
                    quantity=qty,
                    from_location=WAREHOUSE_LOCATION,
                    to_location=channel.name,
                    channel_id=channel.id,
                    reference_id=request.id,
                    notes=f"Received at {channel.code}",
                )
                report.received_total += qty

        if channel.status == ChannelStatus.SHIPPED.value:
            apply_channel_transition(channel, ChannelStatus.ACTIVE)
        db.session.flush()

        append_event_log(
            channel_id=channel.id,
            action="stock_received",
            changed_by=actor,
            details={
                "stock_request_id": request.id,
                "received_total": report.received_total,
                "discrepancies": report.discrepancies,
            },
        )
        return report

    return run_atomic(_op, label="confirm_receiving")


# =============================================================================
# Queries
# =============================================================================

def get_request(request_id: int) -> Optional[StockRequest]:
    return db.session.query(StockRequest).filter_by(id=request_id).first()


def list_requests(channel_id: Optional[int] = None, *, status: Optional[str] = None) -> list[StockRequest]:
    query = db.session.query(StockRequest)
    if channel_id is not None:
        query = query.filter(StockRequest.channel_id == channel_id)
    if status:
        query = query.filter(StockRequest.status == status)
    return query.order_by(StockRequest.created_at.desc(), StockRequest.id.desc()).all()
