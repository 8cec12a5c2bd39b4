from __future__ import annotations

from ..extensions import db
from channelops.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog entry keyed by barcode.

    Read-only from the ledger's point of view; the catalog collaborator owns it.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_code_color_size", "code", "color", "size"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    barcode = db.Column(db.String(64), nullable=False, unique=True)
    code = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    size = db.Column(db.String(16), nullable=True)
    color = db.Column(db.String(64), nullable=True)
    price_cents = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "barcode": self.barcode,
            "code": self.code,
            "name": self.name,
            "size": self.size,
            "color": self.color,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
        }


class StockRequest(db.Model):
    """
    Request for inventory to move from the warehouse into a channel.

    LIFECYCLE:
        draft -> submitted -> approved -> allocated -> packed -> shipped -> received
        cancelled from draft/submitted/approved
        allocated/packed -> approved via release_allocation (reversal path)
    """
    __tablename__ = "stock_requests"
    __table_args__ = (
        db.Index("ix_stock_requests_channel_status", "channel_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)

    request_type = db.Column(db.String(16), nullable=False, default="INITIAL")  # INITIAL, TOPUP
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    requested_total_quantity = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    channel = db.relationship("Channel", backref=db.backref("stock_requests", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def packed_total_quantity(self) -> int:
        return sum(item.packed_quantity or 0 for item in self.items)

    @property
    def is_allocated(self) -> bool:
        return any(item.packed_quantity is not None for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "request_type": self.request_type,
            "status": self.status,
            "requested_total_quantity": self.requested_total_quantity,
            "packed_total_quantity": self.packed_total_quantity,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "version_id": self.version_id,
        }


class StockRequestItem(db.Model):
    """
    Per-barcode line on a stock request.

    requested_quantity comes from the channel; packed_quantity is filled by
    warehouse allocation (None until allocated); received_quantity by the
    channel at receiving time. Expected: received <= packed <= requested.
    Mismatches are reported, not blocked.
    """
    __tablename__ = "stock_request_items"
    __table_args__ = (
        db.UniqueConstraint("request_id", "barcode", name="uq_stock_request_items_request_barcode"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("stock_requests.id"), nullable=False, index=True)
    barcode = db.Column(db.String(64), nullable=False, index=True)
    size = db.Column(db.String(16), nullable=True)

    requested_quantity = db.Column(db.Integer, nullable=False, default=0)
    packed_quantity = db.Column(db.Integer, nullable=True)
    received_quantity = db.Column(db.Integer, nullable=True)

    price_cents = db.Column(db.Integer, nullable=True)
    remarks = db.Column(db.String(255), nullable=True)

    request = db.relationship(
        "StockRequest",
        backref=db.backref("items", lazy=True, cascade="all, delete-orphan", order_by="StockRequestItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "barcode": self.barcode,
            "size": self.size,
            "requested_quantity": self.requested_quantity,
            "packed_quantity": self.packed_quantity,
            "received_quantity": self.received_quantity,
            "price_cents": self.price_cents,
            "remarks": self.remarks,
        }


class Shipment(db.Model):
    """
    Carrier metadata for goods physically moving.

    Attached to a stock request (OUTBOUND) or a return summary (RETURN).
    """
    __tablename__ = "shipments"
    __table_args__ = (
        db.CheckConstraint(
            "(stock_request_id IS NOT NULL) OR (return_summary_id IS NOT NULL)",
            name="ck_shipments_has_parent",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    direction = db.Column(db.String(16), nullable=False, default="OUTBOUND")  # OUTBOUND, RETURN
    stock_request_id = db.Column(db.Integer, db.ForeignKey("stock_requests.id"), nullable=True, unique=True)
    return_summary_id = db.Column(db.Integer, db.ForeignKey("return_summaries.id"), nullable=True, unique=True)

    provider = db.Column(db.String(64), nullable=False)
    tracking_number = db.Column(db.String(128), nullable=True)
    total_quantity = db.Column(db.Integer, nullable=False, default=0)

    shipped_by = db.Column(db.String(64), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    stock_request = db.relationship("StockRequest", backref=db.backref("shipment", uselist=False))
    return_summary = db.relationship("ReturnSummary", backref=db.backref("shipment", uselist=False))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction,
            "stock_request_id": self.stock_request_id,
            "return_summary_id": self.return_summary_id,
            "provider": self.provider,
            "tracking_number": self.tracking_number,
            "total_quantity": self.total_quantity,
            "shipped_by": self.shipped_by,
            "shipped_at": to_utc_z(self.shipped_at),
        }


class ChannelStock(db.Model):
    """
    Live per-(channel, barcode) quantity buckets.

    Conservation law (checked by stock_ledger.audit_conservation):
        received == sold + damaged + missing + returned + available

    Mutated ONLY through services/stock_ledger.py, and only with conditional
    UPDATE statements so concurrent sales cannot oversell.
    """
    __tablename__ = "channel_stocks"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "barcode", name="uq_channel_stocks_channel_barcode"),
        db.CheckConstraint("received_quantity >= 0", name="ck_channel_stocks_received_nonneg"),
        db.CheckConstraint("available_quantity >= 0", name="ck_channel_stocks_available_nonneg"),
        db.CheckConstraint("sold_quantity >= 0", name="ck_channel_stocks_sold_nonneg"),
        db.CheckConstraint("damaged_quantity >= 0", name="ck_channel_stocks_damaged_nonneg"),
        db.CheckConstraint("missing_quantity >= 0", name="ck_channel_stocks_missing_nonneg"),
        db.CheckConstraint("returned_quantity >= 0", name="ck_channel_stocks_returned_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    barcode = db.Column(db.String(64), nullable=False, index=True)

    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    available_quantity = db.Column(db.Integer, nullable=False, default=0)
    sold_quantity = db.Column(db.Integer, nullable=False, default=0)
    damaged_quantity = db.Column(db.Integer, nullable=False, default=0)
    missing_quantity = db.Column(db.Integer, nullable=False, default=0)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    channel = db.relationship("Channel", backref=db.backref("stock", lazy=True))

    @property
    def disposed_quantity(self) -> int:
        return self.sold_quantity + self.damaged_quantity + self.missing_quantity + self.returned_quantity

    @property
    def is_balanced(self) -> bool:
        return self.received_quantity == self.disposed_quantity + self.available_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "barcode": self.barcode,
            "received_quantity": self.received_quantity,
            "available_quantity": self.available_quantity,
            "sold_quantity": self.sold_quantity,
            "damaged_quantity": self.damaged_quantity,
            "missing_quantity": self.missing_quantity,
            "returned_quantity": self.returned_quantity,
            "is_balanced": self.is_balanced,
        }


class WarehouseStock(db.Model):
    """Central warehouse pool per barcode."""
    __tablename__ = "warehouse_stocks"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    barcode = db.Column(db.String(64), nullable=False, unique=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """Append-only record of goods moving between warehouse and channels."""
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_channel_created", "channel_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    movement_type = db.Column(db.String(16), nullable=False, index=True)  # SHIP, RECEIVING, RETURN
    barcode = db.Column(db.String(64), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    from_location = db.Column(db.String(200), nullable=True)
    to_location = db.Column(db.String(200), nullable=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=True, index=True)
    reference_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "movement_type": self.movement_type,
            "barcode": self.barcode,
            "quantity": self.quantity,
            "from_location": self.from_location,
            "to_location": self.to_location,
            "channel_id": self.channel_id,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
