from __future__ import annotations

from ..extensions import db
from channelops.time_utils import to_utc_z


class Channel(db.Model):
    """
    Sales channel (pop-up event or branch).

    Two status tracks progress independently:
    - status: goods lifecycle (draft ... returned -> completed)
    - payment_status: financial close-out (none -> pending_payment -> payment_approved)

    Never deleted; closed via status.
    """
    __tablename__ = "channels"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_channels_code"),
        db.Index("ix_channels_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable code (e.g., "EV-202610-001", "BR-004")
    code = db.Column(db.String(32), nullable=False)
    type = db.Column(db.String(16), nullable=False, default="EVENT")  # EVENT, BRANCH

    name = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="draft", index=True)
    payment_status = db.Column(db.String(32), nullable=False, default="none", index=True)

    sales_target_cents = db.Column(db.Integer, nullable=True)
    responsible_person_name = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "type": self.type,
            "name": self.name,
            "location": self.location,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status,
            "payment_status": self.payment_status,
            "sales_target_cents": self.sales_target_cents,
            "responsible_person_name": self.responsible_person_name,
            "phone": self.phone,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "version_id": self.version_id,
        }


class Staff(db.Model):
    """
    Staff directory entry.

    Deactivated rather than deleted so past assignments and attendance keep
    their reference.
    """
    __tablename__ = "staff"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    # "S0001", "S0002", ... allocated by the staff service
    code = db.Column(db.String(16), nullable=True, unique=True)
    name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="PC")
    phone = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Pay per attended day; commission is also paid per attended day
    daily_rate_cents = db.Column(db.Integer, nullable=True)
    commission_cents = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "role": self.role,
            "phone": self.phone,
            "is_active": self.is_active,
            "daily_rate_cents": self.daily_rate_cents,
            "commission_cents": self.commission_cents,
        }


class StaffAssignment(db.Model):
    """
    Staff working a channel.

    At most one main assignee per channel; enforced by the channel service
    at assignment time, not by the database.
    """
    __tablename__ = "staff_assignments"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "staff_id", name="uq_staff_assignments_channel_staff"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False, index=True)
    is_main = db.Column(db.Boolean, nullable=False, default=False)
    # Replaces the staff member's own commission rate for this channel
    commission_override_cents = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    channel = db.relationship(
        "Channel",
        backref=db.backref("staff_assignments", lazy=True, cascade="all, delete-orphan", order_by="StaffAssignment.id"),
    )
    staff = db.relationship("Staff")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "staff_id": self.staff_id,
            "staff_name": self.staff.name if self.staff else None,
            "is_main": self.is_main,
            "commission_override_cents": self.commission_override_cents,
        }


class ChannelAttendance(db.Model):
    """One row per staff member per day worked at a channel."""
    __tablename__ = "channel_attendance"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "staff_id", "work_date", name="uq_channel_attendance_channel_staff_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False, index=True)
    work_date = db.Column(db.Date, nullable=False)
    recorded_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "staff_id": self.staff_id,
            "work_date": self.work_date.isoformat(),
            "recorded_by": self.recorded_by,
            "created_at": to_utc_z(self.created_at),
        }


class ChannelExpense(db.Model):
    """Operating expense booked against a channel before payment approval."""
    __tablename__ = "channel_expenses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    category = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    channel = db.relationship("Channel", backref=db.backref("expenses", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "category": self.category,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
