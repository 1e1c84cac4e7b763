"""Pydantic v2 schemas for jobs and bids."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class JobCreate(BaseModel):
    """Homeowner posts a job."""
    title: str = Field(..., min_length=3, max_length=200)
    description: str | None = Field(None, max_length=5000)
    category: str | None = Field(None, max_length=64)
    address: str | None = Field(None, max_length=512)
    budget: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    homeowner_id: uuid.UUID
    title: str
    description: str | None
    category: str | None
    address: str | None
    budget: Decimal | None
    status: str
    accepted_bid_id: uuid.UUID | None
    offered_to: uuid.UUID | None
    arrived_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class BidCreate(BaseModel):
    """Contractor bids on a job."""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    message: str | None = Field(None, max_length=2048)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v > Decimal("1000000"):
            raise ValueError("Maximum bid is 1,000,000")
        return v


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: uuid.UUID
    job_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    message: str | None
    status: str
    created_at: datetime
    decided_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class CancelJob(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class DirectOfferCreate(BaseModel):
    """Homeowner offers a job to one contractor at a fixed price, skipping open bidding."""
    contractor_id: uuid.UUID
    title: str = Field(..., min_length=3, max_length=200)
    description: str | None = Field(None, max_length=5000)
    category: str | None = Field(None, max_length=64)
    address: str | None = Field(None, max_length=512)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    message: str | None = Field(None, max_length=2048)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v > Decimal("1000000"):
            raise ValueError("Maximum offer is 1,000,000")
        return v


class DirectOfferResponse(BaseModel):
    job: JobResponse
    bid: BidResponse
