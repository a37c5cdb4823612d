"""m1 booking requests

Revision ID: 8ee43ee7e21f
Revises:
Create Date: 2025-11-05 10:41:37.107128

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '8ee43ee7e21f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "booking_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("diner_id", sa.String(64), nullable=False),
        sa.Column("restaurant_id", sa.String(64), nullable=False),
        sa.Column("party_size", sa.Integer(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("accepted_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("alternates", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("respond_by", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hold_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hold_state", sa.String(16), nullable=True),
        sa.Column("no_show", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("preferences", sa.JSON(), nullable=True),
        sa.Column("restaurant_message", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("party_size > 0", name="ck_booking_requests_party_size"),
        sa.CheckConstraint("window_start < window_end", name="ck_booking_requests_window"),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'alternates_offered', 'expired', 'cancelled')",
            name="ck_booking_requests_status",
        ),
        sa.CheckConstraint(
            "hold_state IS NULL OR hold_state IN ('active', 'seated', 'expired', 'cancelled')",
            name="ck_booking_requests_hold_state",
        ),
    )
    op.create_index("ix_booking_requests_restaurant_created", "booking_requests", ["restaurant_id", "created_at"])
    op.create_index("ix_booking_requests_diner_created", "booking_requests", ["diner_id", "created_at"])
    op.create_index("ix_booking_requests_status", "booking_requests", ["status"])


def downgrade() -> None:
    op.drop_index("ix_booking_requests_status", table_name="booking_requests")
    op.drop_index("ix_booking_requests_diner_created", table_name="booking_requests")
    op.drop_index("ix_booking_requests_restaurant_created", table_name="booking_requests")
    op.drop_table("booking_requests")
