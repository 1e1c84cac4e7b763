"""Escrow business logic: capture, confirm, release, refund, dispute.

Every mutation goes through ``HoldStore`` compare-and-swap updates, and only
``SettlementExecutor`` moves money out of a hold. Automatic release (both
parties confirmed) and admin force-release are two separate entry points that
share the executor.
"""

import logging
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homepro.config import settings
from homepro.errors import (
    Conflict,
    GatewayError,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from homepro.models.escrow import (
    VALID_TRANSITIONS,
    EscrowAction,
    EscrowAuditLog,
    EscrowHold,
    EscrowStatus,
)
from homepro.models.job import Bid, BidStatus, Job
from homepro.models.payout import GatewayCustomer
from homepro.services import job as job_service
from homepro.services.confirmation import ConfirmationCoordinator
from homepro.services.fees import FeeBreakdown, FeePolicy
from homepro.services.gateway import CaptureResult, PaymentGateway, RetryPolicy
from homepro.services.hold_store import AuditEntry, HoldSnapshot, HoldStore, Party, _add_audit
from homepro.services.notifications import notify
from homepro.services.settlement import SettlementExecutor, new_claim_token

logger = logging.getLogger(__name__)

_OPEN = (EscrowStatus.CAPTURED, EscrowStatus.DISPUTED)


def assert_transition(current: EscrowStatus, target: EscrowStatus) -> None:
    """Raise InvalidState if the hold status transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot transition hold from {current.value} to {target.value}")


def _require_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise ValidationError("A reason is required")
    return reason.strip()


class EscrowService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        fee_policy: FeePolicy,
        retry: RetryPolicy,
        store: HoldStore,
        executor: SettlementExecutor,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self.fee_policy = fee_policy
        self._retry = retry
        self._store = store
        self._executor = executor
        self._coordinator = ConfirmationCoordinator(session_factory, store, executor)

    # --- reads ---

    async def get_hold(self, hold_id: uuid.UUID) -> HoldSnapshot:
        return await self._store.get(hold_id)

    async def get_hold_for_job(self, job_id: uuid.UUID) -> HoldSnapshot:
        return await self._store.get_for_job(job_id)

    async def list_holds(self, status: EscrowStatus | None = None, limit: int = 100) -> list[HoldSnapshot]:
        return await self._store.list_holds(status=status, limit=limit)

    async def audit_trail(self, hold_id: uuid.UUID) -> list[EscrowAuditLog]:
        await self._store.get(hold_id)
        return await self._store.audit_trail(hold_id)

    async def list_transactions(self, user_id: uuid.UUID, limit: int = 100) -> list[HoldSnapshot]:
        return await self._store.list_for_party(user_id, limit=limit)

    # --- capture ---

    async def _load_bid_for_hold(
        self, db: AsyncSession, bid_id: uuid.UUID, homeowner_id: uuid.UUID, contractor_id: uuid.UUID
    ) -> tuple[Bid, Job]:
        result = await db.execute(select(Bid).where(Bid.bid_id == bid_id))
        bid = result.scalar_one_or_none()
        if bid is None:
            raise NotFound("Bid not found")
        result = await db.execute(select(Job).where(Job.job_id == bid.job_id))
        job = result.scalar_one()

        if job.homeowner_id != homeowner_id:
            raise Unauthorized("Only the homeowner who posted the job can pay for it")
        if bid.contractor_id != contractor_id:
            raise ValidationError("Contractor does not match the accepted bid")
        if bid.status != BidStatus.ACCEPTED:
            raise Conflict(f"Bid must be accepted before payment, currently {bid.status.value}")

        live = await db.execute(
            select(EscrowHold.hold_id).where(EscrowHold.bid_id == bid_id, EscrowHold.status != EscrowStatus.REFUNDED)
        )
        if live.first() is not None:
            raise Conflict("A payment hold already exists for this bid")
        return bid, job

    async def create_hold(
        self,
        bid_id: uuid.UUID,
        homeowner_id: uuid.UUID | None,
        contractor_id: uuid.UUID | None,
        gross_amount: Decimal,
    ) -> HoldSnapshot:
        """Capture the gross from the homeowner and hold it against an accepted bid.

        No row is written unless the capture succeeds. If the row cannot be
        written after a capture, the capture is refunded before raising.
        """
        if homeowner_id is None or contractor_id is None:
            raise ValidationError("Both homeowner and contractor are required")
        breakdown: FeeBreakdown = self.fee_policy.split(gross_amount)

        async with self._session_factory() as db:
            bid, job = await self._load_bid_for_hold(db, bid_id, homeowner_id, contractor_id)
            if bid.amount != breakdown.gross:
                raise ValidationError(f"Amount {breakdown.gross} does not match the accepted bid of {bid.amount}")

            result = await db.execute(select(GatewayCustomer).where(GatewayCustomer.user_id == homeowner_id))
            customer = result.scalar_one_or_none()
            if customer is None:
                raise ValidationError("Add a payment method before paying for a job")

            job_id, job_title = job.job_id, job.title
            customer_ref, payment_method = customer.gateway_customer_id, customer.default_payment_method

        # New key per payment attempt; the retries inside one attempt share it.
        idempotency_key = f"hold-{bid_id}-{uuid.uuid4().hex}"
        capture: CaptureResult = await self._retry.run(
            "capture",
            lambda: self._gateway.capture(
                amount=breakdown.gross,
                payer_ref=customer_ref,
                idempotency_key=idempotency_key,
                payment_method=payment_method,
                metadata={"job_id": str(job_id), "bid_id": str(bid_id)},
            ),
        )

        hold_id = uuid.uuid4()
        try:
            await self._record_hold(hold_id, job_id, job_title, bid_id, homeowner_id, contractor_id,
                                    breakdown, capture, customer_ref)
        except IntegrityError:
            await self._compensate(capture.intent_id)
            raise Conflict("A payment hold already exists for this bid") from None
        except Exception:
            logger.exception("Hold for bid %s not recorded after capture %s", bid_id, capture.intent_id)
            await self._compensate(capture.intent_id)
            raise

        logger.info(
            "Hold %s captured %s for bid %s (fee %s, payout %s, intent %s)",
            hold_id, breakdown.gross, bid_id, breakdown.platform_fee,
            breakdown.contractor_payout, capture.intent_id,
        )
        return await self._store.get(hold_id)

    async def _record_hold(
        self,
        hold_id: uuid.UUID,
        job_id: uuid.UUID,
        job_title: str,
        bid_id: uuid.UUID,
        homeowner_id: uuid.UUID,
        contractor_id: uuid.UUID,
        breakdown: FeeBreakdown,
        capture: CaptureResult,
        customer_ref: str,
    ) -> None:
        """Insert the hold, its ``created`` audit row and the job move in one transaction."""
        async with self._session_factory() as db:
            db.add(EscrowHold(
                hold_id=hold_id,
                job_id=job_id,
                bid_id=bid_id,
                homeowner_id=homeowner_id,
                contractor_id=contractor_id,
                amount=breakdown.gross,
                platform_fee=breakdown.platform_fee,
                contractor_payout=breakdown.contractor_payout,
                fee_rate=breakdown.rate,
                currency=settings.currency,
                payment_intent_id=capture.intent_id,
                gateway_customer_id=customer_ref,
                status=EscrowStatus.CAPTURED,
            ))
            await db.flush()
            _add_audit(db, hold_id, AuditEntry(
                action=EscrowAction.CREATED,
                amount=breakdown.gross,
                actor_id=homeowner_id,
                new_status=EscrowStatus.CAPTURED,
                metadata={
                    "payment_intent_id": capture.intent_id,
                    "platform_fee": str(breakdown.platform_fee),
                    "contractor_payout": str(breakdown.contractor_payout),
                    "fee_rate": str(breakdown.rate),
                },
            ))
            if not await job_service.mark_confirmed(db, job_id):
                raise InvalidState("Job is no longer awaiting payment")
            await notify(
                db, contractor_id, "payment_secured", "Payment Secured",
                f"${breakdown.gross} for \"{job_title}\" is held in escrow. You can start the work.",
                job_id=job_id, bid_id=bid_id,
            )
            await db.commit()

    async def _compensate(self, intent_id: str) -> None:
        """Refund a capture that has no hold row to back it."""
        try:
            await self._retry.run(
                "compensating refund",
                lambda: self._gateway.refund(intent_id, idempotency_key=f"compensate-{intent_id}"),
            )
            logger.warning("Refunded orphaned capture %s", intent_id)
        except GatewayError:
            logger.exception("Could not refund orphaned capture %s; needs manual follow-up", intent_id)
            raise

    # --- confirmation ---

    async def confirm_completion(self, hold_id: uuid.UUID, party: Party, actor_id: uuid.UUID) -> HoldSnapshot:
        return await self._coordinator.confirm(hold_id, party, actor_id)

    # --- admin and dispute ---

    async def _claim_for_override(self, hold_id: uuid.UUID, target: EscrowStatus) -> tuple[HoldSnapshot, str]:
        hold = await self._store.get(hold_id)
        assert_transition(hold.status, target)
        claim = new_claim_token()
        if not await self._store.claim_settlement(hold_id, claim, _OPEN, require_confirmations=False):
            current = await self._store.get(hold_id)
            if current.is_terminal:
                raise InvalidState(f"Hold is already {current.status.value}")
            raise InvalidState("Settlement already in progress for this hold")
        return await self._store.get(hold_id), claim

    async def force_release(self, hold_id: uuid.UUID, actor_id: uuid.UUID, reason: str) -> HoldSnapshot:
        """Admin release without waiting for both confirmations."""
        reason = _require_reason(reason)
        hold, claim = await self._claim_for_override(hold_id, EscrowStatus.RELEASED)
        logger.warning("Admin %s force-releasing hold %s: %s", actor_id, hold_id, reason)
        return await self._executor.release(
            hold, claim, actor_id=actor_id, reason=reason, action=EscrowAction.FORCE_RELEASED
        )

    async def refund(self, hold_id: uuid.UUID, actor_id: uuid.UUID, reason: str) -> HoldSnapshot:
        """Admin refund of the full gross to the homeowner."""
        reason = _require_reason(reason)
        hold, claim = await self._claim_for_override(hold_id, EscrowStatus.REFUNDED)
        logger.warning("Admin %s refunding hold %s: %s", actor_id, hold_id, reason)
        return await self._executor.refund_funds(hold, claim, actor_id=actor_id, reason=reason)

    async def mark_disputed(
        self, hold_id: uuid.UUID, actor_id: uuid.UUID, reason: str, is_admin: bool = False
    ) -> HoldSnapshot:
        reason = _require_reason(reason)
        hold = await self._store.get(hold_id)
        if not is_admin and hold.party_of(actor_id) is None:
            raise Unauthorized("Only a party to the job or an admin can dispute a payment")
        assert_transition(hold.status, EscrowStatus.DISPUTED)

        changed = await self._store.mark_disputed(
            hold_id,
            reason,
            AuditEntry(
                action=EscrowAction.DISPUTED,
                amount=hold.amount,
                actor_id=actor_id,
                prior_status=hold.status,
                new_status=EscrowStatus.DISPUTED,
                reason=reason,
            ),
        )
        if not changed:
            current = await self._store.get(hold_id)
            if current.status == EscrowStatus.CAPTURED:
                raise InvalidState("Settlement already in progress for this hold")
            raise InvalidState(f"Cannot dispute a hold that is {current.status.value}")

        logger.warning("Hold %s disputed by %s: %s", hold_id, actor_id, reason)
        async with self._session_factory() as db:
            for user_id in (hold.homeowner_id, hold.contractor_id):
                if user_id != actor_id:
                    await notify(
                        db, user_id, "payment_disputed", "Payment Disputed",
                        "A dispute was opened on this job's payment. Support will review it.",
                        job_id=hold.job_id, bid_id=hold.bid_id,
                    )
            await db.commit()
        return await self._store.get(hold_id)

    async def retry_settlement(self, hold_id: uuid.UUID, actor_id: uuid.UUID | None = None) -> HoldSnapshot:
        """Re-run a release that failed or was interrupted after both confirmations."""
        return await self._executor.reconcile_stale(hold_id, actor_id=actor_id)
