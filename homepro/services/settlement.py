"""Release and refund execution.

This is the only place that moves held money. A caller must already hold the
settlement lease on the hold (``HoldStore.claim_settlement``); the executor
talks to the gateway, then finishes the hold and drops the lease in one
conditional UPDATE. On failure the lease is dropped, the hold keeps its status
and a ``settlement_failed`` audit entry records why.

Before every transfer or refund the gateway is asked whether one already
exists for the hold's payment intent, so a retry after a timeout whose request
actually landed does not move the money a second time.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homepro.errors import GatewayError, GatewayErrorKind, InvalidState, PermanentGatewayError
from homepro.models.escrow import EscrowAction, EscrowStatus
from homepro.models.payout import PayoutAccount
from homepro.services import job as job_service
from homepro.services.gateway import PaymentGateway, RetryPolicy
from homepro.services.hold_store import AuditEntry, HoldSnapshot, HoldStore
from homepro.services.notifications import notify

logger = logging.getLogger(__name__)


def new_claim_token() -> str:
    return uuid.uuid4().hex


class SettlementExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: HoldStore,
        gateway: PaymentGateway,
        retry: RetryPolicy,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._gateway = gateway
        self._retry = retry

    async def _payout_destination(self, contractor_id: uuid.UUID) -> str:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PayoutAccount).where(PayoutAccount.contractor_id == contractor_id)
            )
            account = result.scalar_one_or_none()
        if account is None:
            raise PermanentGatewayError(
                GatewayErrorKind.ACCOUNT_NOT_READY, "Contractor has no payout account"
            )
        if not account.payouts_enabled:
            raise PermanentGatewayError(
                GatewayErrorKind.ACCOUNT_NOT_READY,
                f"Payout account {account.gateway_account_id} cannot receive payouts yet",
            )
        return account.gateway_account_id

    async def _fail(
        self,
        hold: HoldSnapshot,
        claim: str,
        actor_id: uuid.UUID | None,
        error: GatewayError,
        action: EscrowAction,
        reason: str | None,
    ) -> None:
        metadata = {"kind": error.kind.value, "retryable": error.retryable}
        if reason is not None:
            # Keep the requested override and its justification alongside the failure
            metadata.update(requested_action=action.value, requested_reason=reason)
        await self._store.release_claim(
            hold.hold_id,
            claim,
            AuditEntry(
                action=EscrowAction.SETTLEMENT_FAILED,
                amount=hold.amount,
                actor_id=actor_id,
                prior_status=hold.status,
                new_status=hold.status,
                reason=error.detail,
                metadata=metadata,
            ),
        )

    async def _record_job_outcome(self, hold: HoldSnapshot, released: bool) -> None:
        """Move the job along with its hold and tell both parties."""
        async with self._session_factory() as db:
            if released:
                await job_service.mark_completed(db, hold.job_id)
                await notify(
                    db, hold.contractor_id, "payment_released", "Payment Released",
                    f"${hold.contractor_payout} is on its way to your payout account.",
                    job_id=hold.job_id, bid_id=hold.bid_id,
                )
                await notify(
                    db, hold.homeowner_id, "job_completed", "Job Completed",
                    "The job is complete and the contractor has been paid.",
                    job_id=hold.job_id, bid_id=hold.bid_id,
                )
            else:
                await job_service.mark_cancelled(db, hold.job_id)
                await notify(
                    db, hold.homeowner_id, "payment_refunded", "Payment Refunded",
                    f"${hold.amount} has been refunded to your original payment method.",
                    job_id=hold.job_id, bid_id=hold.bid_id,
                )
            await db.commit()

    async def release(
        self,
        hold: HoldSnapshot,
        claim: str,
        actor_id: uuid.UUID | None = None,
        reason: str | None = None,
        action: EscrowAction = EscrowAction.RELEASED,
    ) -> HoldSnapshot:
        """Transfer the contractor payout and mark the hold released."""
        try:
            destination = await self._payout_destination(hold.contractor_id)
            existing = await self._retry.run(
                "find_transfer", lambda: self._gateway.find_transfer(hold.payment_intent_id)
            )
            if existing is not None:
                logger.info(
                    "Hold %s already has transfer %s at the gateway, not re-sending",
                    hold.hold_id, existing.transfer_id,
                )
                transfer = existing
            else:
                transfer = await self._retry.run(
                    "transfer",
                    lambda: self._gateway.transfer(
                        destination=destination,
                        amount=hold.contractor_payout,
                        transfer_group=hold.payment_intent_id,
                        idempotency_key=f"release-{hold.hold_id}",
                        metadata={"hold_id": str(hold.hold_id), "job_id": str(hold.job_id)},
                    ),
                )
        except GatewayError as e:
            logger.warning("Release of hold %s failed (%s): %s", hold.hold_id, e.kind.value, e.detail)
            await self._fail(hold, claim, actor_id, e, action, reason)
            raise

        finished = await self._store.finish_release(
            hold.hold_id,
            claim,
            transfer.transfer_id,
            AuditEntry(
                action=action,
                amount=hold.contractor_payout,
                actor_id=actor_id,
                prior_status=hold.status,
                new_status=EscrowStatus.RELEASED,
                reason=reason,
                metadata={"transfer_id": transfer.transfer_id, "platform_fee": str(hold.platform_fee)},
            ),
        )
        if not finished:
            # Lease expired and someone else settled; the transfer id is still recorded at the gateway.
            logger.error("Hold %s: settlement lease lost before release could be recorded", hold.hold_id)
            raise InvalidState("Settlement lease expired before the release was recorded")

        logger.info(
            "Released hold %s: %s to contractor %s (transfer %s)",
            hold.hold_id, hold.contractor_payout, hold.contractor_id, transfer.transfer_id,
        )
        await self._record_job_outcome(hold, released=True)
        return await self._store.get(hold.hold_id)

    async def refund_funds(
        self,
        hold: HoldSnapshot,
        claim: str,
        actor_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> HoldSnapshot:
        """Refund the full gross to the homeowner and mark the hold refunded."""
        try:
            existing = await self._retry.run(
                "find_refund", lambda: self._gateway.find_refund(hold.payment_intent_id)
            )
            if existing is not None:
                logger.info(
                    "Hold %s already has refund %s at the gateway, not re-sending",
                    hold.hold_id, existing.refund_id,
                )
                refund = existing
            else:
                refund = await self._retry.run(
                    "refund",
                    lambda: self._gateway.refund(
                        hold.payment_intent_id, idempotency_key=f"refund-{hold.hold_id}"
                    ),
                )
        except GatewayError as e:
            logger.warning("Refund of hold %s failed (%s): %s", hold.hold_id, e.kind.value, e.detail)
            await self._fail(hold, claim, actor_id, e, EscrowAction.REFUNDED, reason)
            raise

        finished = await self._store.finish_refund(
            hold.hold_id,
            claim,
            refund.refund_id,
            reason,
            AuditEntry(
                action=EscrowAction.REFUNDED,
                amount=hold.amount,
                actor_id=actor_id,
                prior_status=hold.status,
                new_status=EscrowStatus.REFUNDED,
                reason=reason,
                metadata={"refund_id": refund.refund_id, "refund_status": refund.status},
            ),
        )
        if not finished:
            logger.error("Hold %s: settlement lease lost before refund could be recorded", hold.hold_id)
            raise InvalidState("Settlement lease expired before the refund was recorded")

        logger.info("Refunded hold %s: %s to homeowner %s", hold.hold_id, hold.amount, hold.homeowner_id)
        await self._record_job_outcome(hold, released=False)
        return await self._store.get(hold.hold_id)

    async def reconcile_stale(self, hold_id: uuid.UUID, actor_id: uuid.UUID | None = None) -> HoldSnapshot:
        """Finish a hold whose settlement was interrupted.

        Only a captured hold with both confirmations is released automatically;
        anything else needs an explicit force-release or refund.
        """
        hold = await self._store.get(hold_id)
        if hold.is_terminal:
            return hold
        if hold.status != EscrowStatus.CAPTURED or not hold.both_confirmed:
            raise InvalidState(
                f"Hold is {hold.status.value} and not confirmed by both parties; "
                "use force-release or refund instead"
            )
        claim = new_claim_token()
        if not await self._store.claim_settlement(
            hold_id, claim, (EscrowStatus.CAPTURED,), require_confirmations=True
        ):
            raise InvalidState("Settlement already in progress for this hold")
        hold = await self._store.get(hold_id)
        return await self.release(hold, claim, actor_id=actor_id, reason="reconcile")
