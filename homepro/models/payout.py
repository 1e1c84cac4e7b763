"""Gateway-side payment profiles for homeowners (payers) and contractors (payees)."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from homepro.database import Base


class GatewayCustomer(Base):
    __tablename__ = "gateway_customers"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    gateway_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    default_payment_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class PayoutAccount(Base):
    __tablename__ = "payout_accounts"

    contractor_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    gateway_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requirements_due: Mapped[list | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True, default=list
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
