"""Escrow hold and audit log models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Numeric, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from homepro.database import Base


class EscrowStatus(enum.Enum):
    CAPTURED = "captured"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


TERMINAL_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

# Valid state transitions; never backward, never skipping captured.
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.CAPTURED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


class EscrowAction(enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    RELEASED = "released"
    FORCE_RELEASED = "force_released"
    REFUNDED = "refunded"
    SETTLEMENT_FAILED = "settlement_failed"


_status_enum = Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x])


class EscrowHold(Base):
    __tablename__ = "escrow_holds"
    __table_args__ = (
        # One live hold per bid; a refunded hold frees the bid for a new one.
        Index(
            "uq_escrow_holds_live_bid",
            "bid_id",
            unique=True,
            postgresql_where=text("status <> 'refunded'"),
            sqlite_where=text("status <> 'refunded'"),
        ),
        CheckConstraint("amount > 0", name="ck_escrow_holds_amount_positive"),
    )

    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bids.bid_id", ondelete="RESTRICT"), nullable=False
    )
    homeowner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    contractor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    contractor_payout: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[EscrowStatus] = mapped_column(
        _status_enum, nullable=False, default=EscrowStatus.CAPTURED
    )
    homeowner_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    homeowner_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contractor_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contractor_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lease held by the one executor currently talking to the gateway for this hold.
    settlement_claim: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settlement_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_holds.hold_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    prior_status: Mapped[EscrowStatus | None] = mapped_column(_status_enum, nullable=True)
    new_status: Mapped[EscrowStatus | None] = mapped_column(_status_enum, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql"), nullable=True
    )
