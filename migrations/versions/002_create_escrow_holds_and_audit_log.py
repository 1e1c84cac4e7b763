"""Create escrow_holds and escrow_audit_log tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

escrow_status = postgresql.ENUM("captured", "released", "refunded", "disputed", name="escrowstatus")


def upgrade() -> None:
    escrow_status.create(op.get_bind(), checkfirst=True)
    status_column = postgresql.ENUM(name="escrowstatus", create_type=False)

    op.create_table(
        "escrow_holds",
        sa.Column("hold_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("bid_id", sa.Uuid(), sa.ForeignKey("bids.bid_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("homeowner_id", sa.Uuid(), nullable=False),
        sa.Column("contractor_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("contractor_payout", sa.Numeric(12, 2), nullable=False),
        sa.Column("fee_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("payment_intent_id", sa.String(255), nullable=False, unique=True),
        sa.Column("gateway_customer_id", sa.String(255), nullable=True),
        sa.Column("transfer_id", sa.String(255), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("status", status_column, nullable=False, server_default="captured"),
        sa.Column("homeowner_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("homeowner_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contractor_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contractor_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settlement_claim", sa.String(64), nullable=True),
        sa.Column("settlement_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_escrow_holds_amount_positive"),
    )
    op.create_index("ix_escrow_holds_job_id", "escrow_holds", ["job_id"])
    # One live hold per bid; a refunded hold frees the bid for a new one
    op.create_index(
        "uq_escrow_holds_live_bid",
        "escrow_holds",
        ["bid_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'refunded'"),
    )

    op.create_table(
        "escrow_audit_log",
        sa.Column("audit_id", sa.Uuid(), primary_key=True),
        sa.Column("hold_id", sa.Uuid(), sa.ForeignKey("escrow_holds.hold_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "confirmed", "disputed", "released", "force_released", "refunded",
                "settlement_failed",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("prior_status", status_column, nullable=True),
        sa.Column("new_status", status_column, nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
    )
    op.create_index("ix_escrow_audit_log_hold_id", "escrow_audit_log", ["hold_id"])


def downgrade() -> None:
    op.drop_table("escrow_audit_log")
    op.drop_table("escrow_holds")
    op.execute("DROP TYPE IF EXISTS escrowaction")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
