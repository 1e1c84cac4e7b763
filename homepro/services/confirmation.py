"""Dual confirmation of job completion.

Each party flips its own flag with a conditional UPDATE. After every
confirmation the caller tries to take the settlement lease with a predicate
that requires both flags; the store evaluates that predicate after the
caller's own write has committed, so when the two confirmations race at
least one of them sees both flags set, and the lease lets only one of them
through to the executor.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homepro.errors import InvalidState, Unauthorized
from homepro.models.escrow import EscrowAction, EscrowStatus
from homepro.services.hold_store import AuditEntry, HoldSnapshot, HoldStore, Party
from homepro.services.notifications import notify
from homepro.services.settlement import SettlementExecutor, new_claim_token

logger = logging.getLogger(__name__)


class ConfirmationCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: HoldStore,
        executor: SettlementExecutor,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._executor = executor

    async def confirm(self, hold_id: uuid.UUID, party: Party, actor_id: uuid.UUID) -> HoldSnapshot:
        hold = await self._store.get(hold_id)
        if hold.party_id(party) != actor_id:
            raise Unauthorized(f"Only the {party.value} on this job can confirm as {party.value}")
        if hold.is_terminal:
            raise InvalidState(f"Hold is already {hold.status.value}")

        changed = await self._store.confirm(
            hold_id,
            party,
            AuditEntry(
                action=EscrowAction.CONFIRMED,
                amount=hold.amount,
                actor_id=actor_id,
                prior_status=hold.status,
                new_status=hold.status,
                metadata={"party": party.value},
            ),
        )
        if changed:
            logger.info("Hold %s confirmed by %s %s", hold_id, party.value, actor_id)
            await self._notify_other_party(hold, party)
        else:
            current = await self._store.get(hold_id)
            if current.is_terminal:
                raise InvalidState(f"Hold is already {current.status.value}")
            logger.info("Hold %s: repeat confirmation by %s ignored", hold_id, party.value)

        return await self._maybe_release(hold_id)

    async def _maybe_release(self, hold_id: uuid.UUID) -> HoldSnapshot:
        hold = await self._store.get(hold_id)
        if hold.status != EscrowStatus.CAPTURED or not hold.both_confirmed:
            return hold

        claim = new_claim_token()
        if not await self._store.claim_settlement(
            hold_id, claim, (EscrowStatus.CAPTURED,), require_confirmations=True
        ):
            # Another request holds the lease and is releasing.
            return await self._store.get(hold_id)

        hold = await self._store.get(hold_id)
        logger.info("Hold %s confirmed by both parties, releasing", hold_id)
        return await self._executor.release(hold, claim)

    async def _notify_other_party(self, hold: HoldSnapshot, party: Party) -> None:
        if party == Party.HOMEOWNER:
            recipient, who = hold.contractor_id, "The homeowner"
        else:
            recipient, who = hold.homeowner_id, "The contractor"
        async with self._session_factory() as db:
            await notify(
                db, recipient, "completion_confirmed", "Completion Confirmed",
                f"{who} confirmed the job is complete. Payment releases once you confirm too.",
                job_id=hold.job_id, bid_id=hold.bid_id,
            )
            await db.commit()
