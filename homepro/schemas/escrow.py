"""Pydantic v2 schemas for escrow holds."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from homepro.services.hold_store import HoldSnapshot, Party


def _enum_value(v: object) -> str | None:
    if v is None:
        return None
    if hasattr(v, "value"):
        return v.value
    return str(v)


class HoldCreate(BaseModel):
    """Homeowner pays for an accepted bid. Amount must equal the bid."""
    bid_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class HoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hold_id: uuid.UUID
    job_id: uuid.UUID
    bid_id: uuid.UUID
    homeowner_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    platform_fee: Decimal
    contractor_payout: Decimal
    currency: str
    payment_intent_id: str
    status: str
    homeowner_confirmed: bool
    homeowner_confirmed_at: datetime | None
    contractor_confirmed: bool
    contractor_confirmed_at: datetime | None
    dispute_reason: str | None
    refund_reason: str | None
    created_at: datetime
    released_at: datetime | None
    refunded_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class ConfirmCompletion(BaseModel):
    party: Party


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class AdminAction(BaseModel):
    """Force-release and refund both require a reason for the audit log."""
    reason: str = Field(..., min_length=1, max_length=2000)


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    audit_id: uuid.UUID
    hold_id: uuid.UUID
    action: str
    actor_id: uuid.UUID | None
    prior_status: str | None
    new_status: str | None
    reason: str | None
    amount: Decimal
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", "prior_status", "new_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        return _enum_value(v)


class TransactionResponse(BaseModel):
    """One hold as seen by one party: the homeowner's charge or the contractor's payout."""
    hold_id: uuid.UUID
    job_id: uuid.UUID
    direction: str
    amount: Decimal
    platform_fee: Decimal
    currency: str
    status: str
    gateway_reference: str | None
    created_at: datetime
    settled_at: datetime | None

    @classmethod
    def for_party(cls, hold: HoldSnapshot, user_id: uuid.UUID) -> "TransactionResponse":
        if hold.party_of(user_id) == Party.HOMEOWNER:
            direction, amount, reference = "debit", hold.amount, hold.payment_intent_id
        else:
            direction, amount, reference = "credit", hold.contractor_payout, hold.transfer_id
        return cls(
            hold_id=hold.hold_id,
            job_id=hold.job_id,
            direction=direction,
            amount=amount,
            platform_fee=hold.platform_fee,
            currency=hold.currency,
            status=hold.status.value,
            gateway_reference=reference,
            created_at=hold.created_at,
            settled_at=hold.released_at or hold.refunded_at,
        )
