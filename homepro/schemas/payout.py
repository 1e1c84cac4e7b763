"""Pydantic v2 schemas for payment profiles and notifications."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PaymentMethodRegister(BaseModel):
    """Homeowner links the gateway payment method captured by the mobile SDK."""
    payment_method: str | None = Field(None, max_length=255)


class CustomerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    gateway_customer_id: str
    default_payment_method: str | None


class PayoutAccountRegister(BaseModel):
    """Contractor links the connected account created during gateway onboarding."""
    gateway_account_id: str = Field(..., min_length=1, max_length=255)


class PayoutAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contractor_id: uuid.UUID
    gateway_account_id: str
    details_submitted: bool
    payouts_enabled: bool
    requirements_due: list[str] | None
    updated_at: datetime


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_id: uuid.UUID
    kind: str
    title: str
    message: str
    job_id: uuid.UUID | None
    bid_id: uuid.UUID | None
    read: bool
    created_at: datetime


class OnboardingLinkResponse(BaseModel):
    gateway_account_id: str
    payouts_enabled: bool
    url: str
    expires_at: int
