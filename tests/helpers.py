"""Shared test helpers: in-memory payment gateway, data seeding, auth headers."""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homepro.config import settings
from homepro.errors import GatewayError, GatewayErrorKind
from homepro.models.job import Bid, BidStatus, Job, JobStatus
from homepro.models.payout import GatewayCustomer, PayoutAccount
from homepro.services.fees import to_minor_units
from homepro.services.gateway import AccountStatus, CaptureResult, OnboardingLink, RefundResult, TransferResult


@dataclass
class FakeTransfer:
    transfer_id: str
    destination: str
    amount: Decimal
    transfer_group: str
    idempotency_key: str


@dataclass
class FakeRefund:
    refund_id: str
    intent_id: str
    idempotency_key: str


@dataclass
class FakeGateway:
    """In-memory PaymentGateway.

    ``*_failures`` lists are raised in order, one per call, before calls start
    succeeding. With ``apply_failed_transfers`` (or ``apply_failed_refunds``)
    set, a failing call is recorded first, as when a request times out after
    the gateway has already applied it.
    """
    captures: list[dict] = field(default_factory=list)
    transfers: list[FakeTransfer] = field(default_factory=list)
    refunds: list[FakeRefund] = field(default_factory=list)
    capture_failures: list[GatewayError] = field(default_factory=list)
    transfer_failures: list[GatewayError] = field(default_factory=list)
    refund_failures: list[GatewayError] = field(default_factory=list)
    apply_failed_transfers: bool = False
    apply_failed_refunds: bool = False
    accounts: dict[str, AccountStatus] = field(default_factory=dict)
    onboarding_links: list[str] = field(default_factory=list)
    transfer_calls: int = 0
    refund_calls: int = 0

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        return f"cus_{user_id.replace('-', '')[:14]}"

    async def capture(
        self,
        amount: Decimal,
        payer_ref: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CaptureResult:
        if self.capture_failures:
            raise self.capture_failures.pop(0)
        for existing in self.captures:
            if existing["idempotency_key"] == idempotency_key:
                return CaptureResult(existing["intent_id"], to_minor_units(existing["amount"]))
        intent_id = f"pi_{len(self.captures) + 1:04d}_{uuid.uuid4().hex[:8]}"
        self.captures.append({
            "intent_id": intent_id,
            "amount": amount,
            "payer_ref": payer_ref,
            "idempotency_key": idempotency_key,
            "payment_method": payment_method,
        })
        return CaptureResult(intent_id=intent_id, amount_minor=to_minor_units(amount))

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        transfer_group: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        self.transfer_calls += 1
        existing = next((t for t in self.transfers if t.idempotency_key == idempotency_key), None)
        if self.transfer_failures:
            error = self.transfer_failures.pop(0)
            if self.apply_failed_transfers and existing is None:
                self._record_transfer(destination, amount, transfer_group, idempotency_key)
            raise error
        if existing is not None:
            return TransferResult(existing.transfer_id, to_minor_units(existing.amount))
        record = self._record_transfer(destination, amount, transfer_group, idempotency_key)
        return TransferResult(record.transfer_id, to_minor_units(amount))

    def _record_transfer(
        self, destination: str, amount: Decimal, transfer_group: str, idempotency_key: str
    ) -> FakeTransfer:
        record = FakeTransfer(
            transfer_id=f"tr_{len(self.transfers) + 1:04d}",
            destination=destination,
            amount=amount,
            transfer_group=transfer_group,
            idempotency_key=idempotency_key,
        )
        self.transfers.append(record)
        return record

    async def refund(self, intent_id: str, idempotency_key: str) -> RefundResult:
        self.refund_calls += 1
        existing = next((r for r in self.refunds if r.idempotency_key == idempotency_key), None)
        if self.refund_failures:
            error = self.refund_failures.pop(0)
            if self.apply_failed_refunds and existing is None:
                self._record_refund(intent_id, idempotency_key)
            raise error
        if existing is not None:
            return RefundResult(existing.refund_id, 0, "succeeded")
        record = self._record_refund(intent_id, idempotency_key)
        return RefundResult(record.refund_id, 0, "succeeded")

    def _record_refund(self, intent_id: str, idempotency_key: str) -> FakeRefund:
        record = FakeRefund(
            refund_id=f"re_{len(self.refunds) + 1:04d}", intent_id=intent_id, idempotency_key=idempotency_key
        )
        self.refunds.append(record)
        return record

    async def find_transfer(self, transfer_group: str) -> TransferResult | None:
        for t in self.transfers:
            if t.transfer_group == transfer_group:
                return TransferResult(t.transfer_id, to_minor_units(t.amount))
        return None

    async def find_refund(self, intent_id: str) -> RefundResult | None:
        for r in self.refunds:
            if r.intent_id == intent_id:
                return RefundResult(r.refund_id, 0, "succeeded")
        return None

    async def get_account(self, account_id: str) -> AccountStatus:
        if account_id in self.accounts:
            return self.accounts[account_id]
        return AccountStatus(account_id, details_submitted=True, payouts_enabled=True, requirements_due=[])

    async def create_account(self, contractor_id: str, email: str | None = None) -> str:
        account_id = f"acct_{contractor_id.replace('-', '')[:12]}"
        self.accounts.setdefault(
            account_id, AccountStatus(account_id, details_submitted=False, payouts_enabled=False)
        )
        return account_id

    async def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> OnboardingLink:
        self.onboarding_links.append(account_id)
        return OnboardingLink(url=f"https://connect.gateway.test/setup/{account_id}", expires_at=1_900_000_000)


def timeout_error() -> GatewayError:
    return GatewayError.from_kind(GatewayErrorKind.NETWORK, "Payment gateway timed out on POST /transfers")


def declined_error() -> GatewayError:
    return GatewayError.from_kind(GatewayErrorKind.DECLINED, "Your card was declined.")


@dataclass(frozen=True)
class Seed:
    job_id: uuid.UUID
    bid_id: uuid.UUID
    homeowner_id: uuid.UUID
    contractor_id: uuid.UUID
    amount: Decimal
    payout_account_id: str


async def seed_accepted_bid(
    session_factory: async_sessionmaker[AsyncSession],
    amount: Decimal = Decimal("500.00"),
    bid_status: BidStatus = BidStatus.ACCEPTED,
    payouts_enabled: bool = True,
) -> Seed:
    """A job with one bid at ``bid_status``, plus both parties' gateway profiles."""
    homeowner_id, contractor_id = uuid.uuid4(), uuid.uuid4()
    job_id, bid_id = uuid.uuid4(), uuid.uuid4()
    accepted = bid_status == BidStatus.ACCEPTED
    account_id = f"acct_{contractor_id.hex[:12]}"

    async with session_factory() as db:
        db.add(Job(
            job_id=job_id,
            homeowner_id=homeowner_id,
            title="Fix leaking kitchen sink",
            category="plumbing",
            status=JobStatus.BID_ACCEPTED if accepted else JobStatus.BIDDING,
            accepted_bid_id=bid_id if accepted else None,
        ))
        await db.flush()
        db.add(Bid(bid_id=bid_id, job_id=job_id, contractor_id=contractor_id, amount=amount, status=bid_status))
        db.add(GatewayCustomer(
            user_id=homeowner_id,
            gateway_customer_id=f"cus_{homeowner_id.hex[:12]}",
            default_payment_method="pm_card_visa",
        ))
        db.add(PayoutAccount(
            contractor_id=contractor_id,
            gateway_account_id=account_id,
            details_submitted=True,
            payouts_enabled=payouts_enabled,
            requirements_due=[],
        ))
        await db.commit()

    return Seed(job_id, bid_id, homeowner_id, contractor_id, amount, account_id)


def make_token(user_id: uuid.UUID, app_role: str | None, expires_in: int = 3600, **claims) -> str:  # type: ignore[no-untyped-def]
    payload = {
        "sub": str(user_id),
        "aud": settings.jwt_audience,
        "exp": int(time.time()) + expires_in,
        "app_metadata": {"role": app_role} if app_role else {},
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def auth_headers(user_id: uuid.UUID, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}
