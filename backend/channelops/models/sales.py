from __future__ import annotations

from ..extensions import db
from channelops.time_utils import to_utc_z


class Sale(db.Model):
    """
    Point-of-sale bill.

    Immutable once created; cancellation is a compensating transaction
    (status -> cancelled, stock returned), never a delete.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "bill_code", name="uq_sales_channel_bill_code"),
        db.Index("ix_sales_channel_status_sold", "channel_id", "status", "sold_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=True, index=True)

    # "{channel code}-{running number}" (e.g., "EV-202610-001-0007"); None for unbound sales
    bill_code = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="active", index=True)  # active, cancelled

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    adjustment_total_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by = db.Column(db.String(64), nullable=True)

    # Cancellation audit trail
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    channel = db.relationship("Channel", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "bill_code": self.bill_code,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "adjustment_total_cents": self.adjustment_total_cents,
            "discount_cents": self.discount_cents,
            "total_amount_cents": self.total_amount_cents,
            "sold_at": to_utc_z(self.sold_at),
            "created_by": self.created_by,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """Line on a bill. unit_price_cents is net of the per-unit discount."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    barcode = db.Column(db.String(64), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    list_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    is_freebie = db.Column(db.Boolean, nullable=False, default=False)

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True, order_by="SaleItem.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "list_price_cents": self.list_price_cents,
            "discount_cents": self.discount_cents,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "is_freebie": self.is_freebie,
        }


class SaleAdjustment(db.Model):
    """Signed bill-level add-on (delivery fee, rounding, ...)."""
    __tablename__ = "sale_adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", backref=db.backref("adjustments", lazy=True, order_by="SaleAdjustment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "description": self.description,
            "amount_cents": self.amount_cents,
        }
