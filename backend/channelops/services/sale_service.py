# Overview: Point-of-sale bills and their compensating cancellation.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional, Union

from sqlalchemy import func

from ..errors import AlreadyCancelledError, GuardFailedError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Channel, Sale, SaleAdjustment, SaleItem
from ..time_utils import utcnow
from .event_log_service import append_event_log
from .results import ServiceResult
from .sequence_service import next_bill_code
from .status_machine import ChannelStatus
from .stock_ledger import apply_sale, apply_sale_reversal
from .transaction import lock_for_update, run_atomic

SALE_STATUS_ACTIVE = "active"
SALE_STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class CartLine:
    barcode: str
    quantity: int
    unit_price_cents: int
    discount_cents: int = 0
    is_freebie: bool = False

    @property
    def net_unit_cents(self) -> int:
        return 0 if self.is_freebie else self.unit_price_cents - self.discount_cents

    @property
    def total_cents(self) -> int:
        return self.net_unit_cents * self.quantity


@dataclass(frozen=True)
class Adjustment:
    description: str
    amount_cents: int


@dataclass(frozen=True)
class SaleTotals:
    subtotal_cents: int
    adjustment_total_cents: int
    discount_cents: int
    total_amount_cents: int


def _as_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": value})
    return value


def _coerce_line(raw: Union[CartLine, Mapping]) -> CartLine:
    if isinstance(raw, CartLine):
        line = raw
    else:
        try:
            line = CartLine(
                barcode=raw["barcode"],
                quantity=raw["quantity"],
                unit_price_cents=raw["unit_price_cents"],
                discount_cents=raw.get("discount_cents", 0),
                is_freebie=bool(raw.get("is_freebie", False)),
            )
        except KeyError as exc:
            raise ValidationError(f"Cart line is missing {exc.args[0]}", {"field": exc.args[0]}) from None

    if not isinstance(line.barcode, str) or not line.barcode.strip():
        raise ValidationError("barcode is required", {"field": "barcode"})
    if _as_int(line.quantity, "quantity") <= 0:
        raise ValidationError("quantity must be positive", {"barcode": line.barcode, "quantity": line.quantity})
    if _as_int(line.unit_price_cents, "unit_price_cents") < 0:
        raise ValidationError("unit price cannot be negative", {"barcode": line.barcode})
    discount = _as_int(line.discount_cents, "discount_cents")
    if discount < 0 or discount > line.unit_price_cents:
        raise ValidationError(
            "line discount must be between zero and the unit price",
            {"barcode": line.barcode, "discount_cents": discount},
        )
    return line


def _coerce_adjustment(raw: Union[Adjustment, Mapping]) -> Adjustment:
    if isinstance(raw, Adjustment):
        adj = raw
    else:
        adj = Adjustment(description=raw.get("description") or "Adjustment", amount_cents=raw.get("amount_cents"))
    _as_int(adj.amount_cents, "amount_cents")
    return adj


def _load_channel(channel_id: int) -> Channel:
    channel = lock_for_update(db.session.query(Channel).filter_by(id=channel_id)).first()
    if not channel:
        raise NotFoundError("Channel not found", {"channel_id": channel_id})
    return channel


def _require_active(channel: Channel, action: str) -> None:
    if channel.status != ChannelStatus.ACTIVE.value:
        raise GuardFailedError(
            f"Sales can only be {action} while the channel is active",
            {"channel_id": channel.id, "status": channel.status},
        )


def compute_totals(lines: Iterable[CartLine], adjustments: Iterable[Adjustment] = (), discount_cents: int = 0) -> SaleTotals:
    """
    subtotal = sum((unit price - line discount) * qty), freebies at 0
    total    = subtotal + sum(signed adjustments) - bill discount
    """
    subtotal = sum(line.total_cents for line in lines)
    adjustment_total = sum(adj.amount_cents for adj in adjustments)
    return SaleTotals(
        subtotal_cents=subtotal,
        adjustment_total_cents=adjustment_total,
        discount_cents=discount_cents,
        total_amount_cents=subtotal + adjustment_total - discount_cents,
    )


def create_sale(
    *,
    items: Iterable[Union[CartLine, Mapping]],
    channel_id: Optional[int] = None,
    adjustments: Iterable[Union[Adjustment, Mapping]] = (),
    discount_cents: int = 0,
    actor: Optional[str] = None,
    sold_at: Optional[datetime] = None,
) -> ServiceResult[Sale]:
    """
    Record a bill as one unit of work.

    Channel-bound sales take stock from the channel ledger (non-freebie
    lines only) and get a bill code from the channel's sequence; any line
    short of stock aborts the whole sale. Unbound sales touch neither.
    """
    items = list(items)
    adjustments = list(adjustments)

    def _op() -> Sale:
        lines = [_coerce_line(raw) for raw in items]
        if not lines:
            raise ValidationError("Cannot record a sale with no items")
        adjs = [_coerce_adjustment(raw) for raw in adjustments]
        if _as_int(discount_cents, "discount_cents") < 0:
            raise ValidationError("Bill discount cannot be negative", {"discount_cents": discount_cents})

        totals = compute_totals(lines, adjs, discount_cents)
        if totals.total_amount_cents < 0:
            raise ValidationError("Bill total cannot be negative", {"total_amount_cents": totals.total_amount_cents})

        channel = None
        bill_code = None
        if channel_id is not None:
            channel = _load_channel(channel_id)
            _require_active(channel, "recorded")
            for line in lines:
                if not line.is_freebie:
                    apply_sale(channel.id, line.barcode.strip(), line.quantity)
            bill_code = next_bill_code(channel.id, channel.code)

        sale = Sale(
            channel_id=channel.id if channel else None,
            bill_code=bill_code,
            status=SALE_STATUS_ACTIVE,
            subtotal_cents=totals.subtotal_cents,
            adjustment_total_cents=totals.adjustment_total_cents,
            discount_cents=totals.discount_cents,
            total_amount_cents=totals.total_amount_cents,
            sold_at=sold_at or utcnow(),
            created_by=actor,
        )
        db.session.add(sale)
        db.session.flush()

        for line in lines:
            db.session.add(SaleItem(
                sale_id=sale.id,
                barcode=line.barcode.strip(),
                quantity=line.quantity,
                list_price_cents=line.unit_price_cents,
                discount_cents=0 if line.is_freebie else line.discount_cents,
                unit_price_cents=line.net_unit_cents,
                total_cents=line.total_cents,
                is_freebie=line.is_freebie,
            ))
        for adj in adjs:
            db.session.add(SaleAdjustment(sale_id=sale.id, description=adj.description, amount_cents=adj.amount_cents))
        db.session.flush()

        if channel is not None:
            append_event_log(
                channel_id=channel.id,
                action="sale_recorded",
                changed_by=actor,
                details={
                    "sale_id": sale.id,
                    "bill_code": bill_code,
                    "total_amount_cents": sale.total_amount_cents,
                    "item_count": len(lines),
                },
            )
        return sale

    return run_atomic(_op, label="create_sale")


def cancel_sale(sale_id: int, reason: str, *, actor: Optional[str] = None) -> ServiceResult[Sale]:
    """
    Compensate a sale: status -> cancelled and every non-freebie line's
    quantity back to available. The bill keeps its number.
    """
    def _op() -> Sale:
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError("Sale not found", {"sale_id": sale_id})
        if sale.status == SALE_STATUS_CANCELLED:
            raise AlreadyCancelledError("Sale already cancelled", {"sale_id": sale.id, "bill_code": sale.bill_code})
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", {"field": "reason"})

        if sale.channel_id is not None:
            _require_active(_load_channel(sale.channel_id), "cancelled")
            for item in sale.items:
                if not item.is_freebie:
                    apply_sale_reversal(sale.channel_id, item.barcode, item.quantity)

        sale.status = SALE_STATUS_CANCELLED
        sale.cancelled_at = utcnow()
        sale.cancelled_by = actor
        sale.cancel_reason = reason.strip()
        db.session.flush()

        if sale.channel_id is not None:
            append_event_log(
                channel_id=sale.channel_id,
                action="sale_cancelled",
                changed_by=actor,
                details={"sale_id": sale.id, "bill_code": sale.bill_code, "reason": sale.cancel_reason},
            )
        return sale

    return run_atomic(_op, label="cancel_sale")


# =============================================================================
# Queries
# =============================================================================

def get_sale(sale_id: int) -> Optional[Sale]:
    return db.session.query(Sale).filter_by(id=sale_id).first()


def list_sales(channel_id: int, *, include_cancelled: bool = False) -> list[Sale]:
    query = db.session.query(Sale).filter(Sale.channel_id == channel_id)
    if not include_cancelled:
        query = query.filter(Sale.status == SALE_STATUS_ACTIVE)
    return query.order_by(Sale.sold_at.desc(), Sale.id.desc()).all()


def channel_sales_summary(channel_id: int) -> dict:
    bill_count, revenue = (
        db.session.query(func.count(Sale.id), func.coalesce(func.sum(Sale.total_amount_cents), 0))
        .filter(Sale.channel_id == channel_id, Sale.status == SALE_STATUS_ACTIVE)
        .one()
    )
    units = (
        db.session.query(func.coalesce(func.sum(SaleItem.quantity), 0))
        .join(Sale, Sale.id == SaleItem.sale_id)
        .filter(
            Sale.channel_id == channel_id,
            Sale.status == SALE_STATUS_ACTIVE,
            SaleItem.is_freebie.is_(False),
        )
        .scalar()
    )
    cancelled = (
        db.session.query(func.count(Sale.id))
        .filter(Sale.channel_id == channel_id, Sale.status == SALE_STATUS_CANCELLED)
        .scalar()
    )
    return {
        "channel_id": channel_id,
        "bill_count": bill_count,
        "revenue_cents": int(revenue),
        "units_sold": int(units),
        "cancelled_count": cancelled,
    }
