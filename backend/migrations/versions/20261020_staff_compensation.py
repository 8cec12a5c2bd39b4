"""Staff pay rates, commission overrides and channel attendance

Revision ID: 20261020_staff_comp
Revises: 20261019_initial
Create Date: 2026-10-20
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261020_staff_comp"
down_revision = "20261019_initial"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("staff", schema=None) as batch_op:
        batch_op.add_column(sa.Column("phone", sa.String(length=32), nullable=True))
        batch_op.add_column(sa.Column("daily_rate_cents", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("commission_cents", sa.Integer(), nullable=True))

    with op.batch_alter_table("staff_assignments", schema=None) as batch_op:
        batch_op.add_column(sa.Column("commission_override_cents", sa.Integer(), nullable=True))

    op.create_table("channel_attendance",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("channel_id", sa.Integer(), nullable=False),
        sa.Column("staff_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("recorded_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], name=op.f("fk_channel_attendance_channel_id_channels")),
        sa.ForeignKeyConstraint(["staff_id"], ["staff.id"], name=op.f("fk_channel_attendance_staff_id_staff")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_channel_attendance")),
        sa.UniqueConstraint("channel_id", "staff_id", "work_date", name="uq_channel_attendance_channel_staff_date"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("channel_attendance", schema=None) as batch_op:
        batch_op.create_index("ix_channel_attendance_channel_id", ["channel_id"], unique=False)
        batch_op.create_index("ix_channel_attendance_staff_id", ["staff_id"], unique=False)


def downgrade():
    op.drop_table("channel_attendance")

    with op.batch_alter_table("staff_assignments", schema=None) as batch_op:
        batch_op.drop_column("commission_override_cents")

    with op.batch_alter_table("staff", schema=None) as batch_op:
        batch_op.drop_column("commission_cents")
        batch_op.drop_column("daily_rate_cents")
        batch_op.drop_column("phone")
