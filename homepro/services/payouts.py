"""Gateway payment profiles: homeowner customers and contractor payout accounts.

Onboarding itself (card entry, identity checks for payouts) happens in the
gateway's hosted flows; these functions record the resulting ids and mirror
whether a connected account can receive transfers yet.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.config import settings
from homepro.errors import Conflict, NotFound
from homepro.models.payout import GatewayCustomer, PayoutAccount
from homepro.services.gateway import OnboardingLink, PaymentGateway, RetryPolicy

logger = logging.getLogger(__name__)


async def ensure_customer(
    db: AsyncSession,
    gateway: PaymentGateway,
    retry: RetryPolicy,
    user_id: uuid.UUID,
    email: str | None = None,
    payment_method: str | None = None,
) -> GatewayCustomer:
    """Create the homeowner's gateway customer on first use; update the default method."""
    result = await db.execute(select(GatewayCustomer).where(GatewayCustomer.user_id == user_id))
    customer = result.scalar_one_or_none()
    if customer is None:
        customer_id = await retry.run(
            "create_customer", lambda: gateway.create_customer(str(user_id), email)
        )
        customer = GatewayCustomer(user_id=user_id, gateway_customer_id=customer_id)
        db.add(customer)
        logger.info("Created gateway customer %s for user %s", customer_id, user_id)
    if payment_method:
        customer.default_payment_method = payment_method

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Gateway customer already registered")
    await db.refresh(customer)
    return customer


async def register_payout_account(
    db: AsyncSession,
    gateway: PaymentGateway,
    retry: RetryPolicy,
    contractor_id: uuid.UUID,
    gateway_account_id: str,
) -> PayoutAccount:
    status = await retry.run("get_account", lambda: gateway.get_account(gateway_account_id))

    result = await db.execute(select(PayoutAccount).where(PayoutAccount.contractor_id == contractor_id))
    account = result.scalar_one_or_none()
    if account is None:
        account = PayoutAccount(contractor_id=contractor_id, gateway_account_id=status.account_id)
        db.add(account)
    else:
        account.gateway_account_id = status.account_id
    account.details_submitted = status.details_submitted
    account.payouts_enabled = status.payouts_enabled
    account.requirements_due = status.requirements_due
    account.updated_at = datetime.now(UTC)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("This payout account is linked to another contractor")
    await db.refresh(account)
    logger.info(
        "Payout account %s for contractor %s: payouts_enabled=%s",
        account.gateway_account_id, contractor_id, account.payouts_enabled,
    )
    return account


async def refresh_payout_account(
    db: AsyncSession, gateway: PaymentGateway, retry: RetryPolicy, contractor_id: uuid.UUID
) -> PayoutAccount:
    """Re-read onboarding status from the gateway."""
    result = await db.execute(select(PayoutAccount).where(PayoutAccount.contractor_id == contractor_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFound("No payout account registered")
    return await register_payout_account(db, gateway, retry, contractor_id, account.gateway_account_id)


async def start_payout_onboarding(
    db: AsyncSession,
    gateway: PaymentGateway,
    retry: RetryPolicy,
    contractor_id: uuid.UUID,
    email: str | None = None,
) -> tuple[PayoutAccount, OnboardingLink]:
    """Create the contractor's connected account on first use and return a hosted onboarding link.

    The account cannot receive payouts until onboarding finishes; the
    contractor calls refresh afterwards to pick up the new status.
    """
    result = await db.execute(select(PayoutAccount).where(PayoutAccount.contractor_id == contractor_id))
    account = result.scalar_one_or_none()
    if account is None:
        account_id = await retry.run(
            "create_account", lambda: gateway.create_account(str(contractor_id), email)
        )
        account = PayoutAccount(
            contractor_id=contractor_id,
            gateway_account_id=account_id,
            details_submitted=False,
            payouts_enabled=False,
            requirements_due=[],
        )
        db.add(account)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("This payout account is linked to another contractor")
        await db.refresh(account)
        logger.info("Created payout account %s for contractor %s", account_id, contractor_id)

    account_id = account.gateway_account_id
    link = await retry.run(
        "create_onboarding_link",
        lambda: gateway.create_onboarding_link(
            account_id,
            refresh_url=settings.payout_onboarding_refresh_url,
            return_url=settings.payout_onboarding_return_url,
        ),
    )
    return account, link
