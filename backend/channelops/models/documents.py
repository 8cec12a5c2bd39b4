from __future__ import annotations

from ..extensions import db
from channelops.time_utils import to_utc_z


class ReturnSummary(db.Model):
    """
    Close-out snapshot of a channel's leftover stock.

    Immutable once created except for settlement (confirmed_at/by) when the
    warehouse receives the goods back.
    """
    __tablename__ = "return_summaries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    confirmed_by = db.Column(db.String(64), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    channel = db.relationship("Channel", backref=db.backref("return_summaries", lazy=True))

    @property
    def is_settled(self) -> bool:
        return self.confirmed_at is not None

    @property
    def remaining_total_quantity(self) -> int:
        return sum(item.remaining_quantity for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "confirmed_by": self.confirmed_by,
            "confirmed_at": to_utc_z(self.confirmed_at) if self.confirmed_at else None,
            "is_settled": self.is_settled,
            "remaining_total_quantity": self.remaining_total_quantity,
            "items": [item.to_dict() for item in self.items],
        }


class ReturnItem(db.Model):
    """Per-barcode close-out counts."""
    __tablename__ = "return_items"
    __table_args__ = (
        db.UniqueConstraint("summary_id", "barcode", name="uq_return_items_summary_barcode"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    summary_id = db.Column(db.Integer, db.ForeignKey("return_summaries.id"), nullable=False, index=True)
    barcode = db.Column(db.String(64), nullable=False)

    sold_quantity = db.Column(db.Integer, nullable=False, default=0)
    damaged_quantity = db.Column(db.Integer, nullable=False, default=0)
    missing_quantity = db.Column(db.Integer, nullable=False, default=0)
    remaining_quantity = db.Column(db.Integer, nullable=False, default=0)

    summary = db.relationship(
        "ReturnSummary",
        backref=db.backref("items", lazy=True, cascade="all, delete-orphan", order_by="ReturnItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "summary_id": self.summary_id,
            "barcode": self.barcode,
            "sold_quantity": self.sold_quantity,
            "damaged_quantity": self.damaged_quantity,
            "missing_quantity": self.missing_quantity,
            "remaining_quantity": self.remaining_quantity,
        }


class EventLog(db.Model):
    """
    Append-only audit trail of significant channel actions.

    Written inside the same DB transaction as the action it records; never
    updated or deleted.
    """
    __tablename__ = "event_logs"
    __table_args__ = (
        db.Index("ix_event_logs_channel_created", "channel_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)

    # What happened (e.g., "sale_recorded", "channel_approved")
    action = db.Column(db.String(64), nullable=False, index=True)

    # Small structured payload; do not denormalize domain state
    details = db.Column(db.JSON, nullable=True)

    changed_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "action": self.action,
            "details": self.details,
            "changed_by": self.changed_by,
            "created_at": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """
    Monotonic counters keyed by (scope_key, document_type).

    Channel codes use scope "EV-YYYYMM" / "BR"; bill numbers use
    "channel:{id}". Incremented only through a conditional UPDATE.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("scope_key", "document_type", name="uq_doc_sequences_scope_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope_key = db.Column(db.String(64), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope_key": self.scope_key,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
