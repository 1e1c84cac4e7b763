"""Payment profile endpoints: homeowner payment method, contractor payout account."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.auth.middleware import AuthenticatedUser, verify_request
from homepro.auth.rate_limit import check_rate_limit
from homepro.database import get_db
from homepro.dependencies import get_gateway, get_retry_policy
from homepro.schemas.payout import (
    CustomerResponse,
    OnboardingLinkResponse,
    PaymentMethodRegister,
    PayoutAccountRegister,
    PayoutAccountResponse,
)
from homepro.services import payouts as payout_service
from homepro.services.gateway import PaymentGateway, RetryPolicy

router = APIRouter(prefix="/payouts", tags=["payouts"], dependencies=[Depends(check_rate_limit)])


@router.post("/customer", response_model=CustomerResponse)
async def register_payment_method(
    data: PaymentMethodRegister,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> CustomerResponse:
    """Homeowner: create the gateway customer and set the card used for holds."""
    if auth.role != "homeowner":
        raise HTTPException(status_code=403, detail="Only homeowners pay for jobs")
    customer = await payout_service.ensure_customer(
        db, gateway, retry, auth.user_id, email=auth.email, payment_method=data.payment_method
    )
    return CustomerResponse.model_validate(customer)


@router.post("/account", response_model=PayoutAccountResponse)
async def register_payout_account(
    data: PayoutAccountRegister,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> PayoutAccountResponse:
    """Contractor: link the connected account created during payout onboarding."""
    if auth.role != "contractor":
        raise HTTPException(status_code=403, detail="Only contractors receive payouts")
    account = await payout_service.register_payout_account(
        db, gateway, retry, auth.user_id, data.gateway_account_id
    )
    return PayoutAccountResponse.model_validate(account)


@router.post("/account/refresh", response_model=PayoutAccountResponse)
async def refresh_payout_account(
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> PayoutAccountResponse:
    account = await payout_service.refresh_payout_account(db, gateway, retry, auth.user_id)
    return PayoutAccountResponse.model_validate(account)


@router.post("/account/onboarding", response_model=OnboardingLinkResponse)
async def start_payout_onboarding(
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> OnboardingLinkResponse:
    """Contractor: create a payout account if needed and get the hosted onboarding link."""
    if auth.role != "contractor":
        raise HTTPException(status_code=403, detail="Only contractors receive payouts")
    account, link = await payout_service.start_payout_onboarding(
        db, gateway, retry, auth.user_id, email=auth.email
    )
    return OnboardingLinkResponse(
        gateway_account_id=account.gateway_account_id,
        payouts_enabled=account.payouts_enabled,
        url=link.url,
        expires_at=link.expires_at,
    )
