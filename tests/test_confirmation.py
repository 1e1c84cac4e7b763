"""Tests for dual confirmation and automatic release."""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from homepro.errors import InvalidState, PermanentGatewayError, Unauthorized
from homepro.models.escrow import EscrowAction, EscrowStatus
from homepro.models.job import Job, JobStatus
from homepro.models.notification import Notification
from homepro.models.payout import PayoutAccount
from homepro.services.escrow import EscrowService
from homepro.services.hold_store import Party
from tests.helpers import FakeGateway, seed_accepted_bid


@pytest.mark.asyncio
async def test_both_confirmations_release_once(escrow: EscrowService, gateway: FakeGateway, session_factory) -> None:
    """$500 hold: homeowner then contractor confirm → released, one $450 transfer."""
    seed = await seed_accepted_bid(session_factory, Decimal("500.00"))
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)
    assert (hold.platform_fee, hold.contractor_payout) == (Decimal("50.00"), Decimal("450.00"))

    after_homeowner = await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)
    assert after_homeowner.status == EscrowStatus.CAPTURED
    assert after_homeowner.homeowner_confirmed
    assert after_homeowner.homeowner_confirmed_at is not None
    assert not after_homeowner.contractor_confirmed
    assert gateway.transfers == []

    final = await escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id)
    assert final.status == EscrowStatus.RELEASED
    assert final.released_at is not None
    assert final.settlement_claim is None
    assert final.transfer_id == gateway.transfers[0].transfer_id

    assert len(gateway.transfers) == 1
    transfer = gateway.transfers[0]
    assert transfer.amount == Decimal("450.00")
    assert transfer.destination == seed.payout_account_id
    assert transfer.transfer_group == hold.payment_intent_id
    assert transfer.idempotency_key == f"release-{hold.hold_id}"

    actions = [e.action for e in await escrow.audit_trail(hold.hold_id)]
    assert actions == [
        EscrowAction.CREATED, EscrowAction.CONFIRMED, EscrowAction.CONFIRMED, EscrowAction.RELEASED,
    ]

    async with session_factory() as db:
        job = (await db.execute(select(Job).where(Job.job_id == seed.job_id))).scalar_one()
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None


@pytest.mark.asyncio
async def test_contractor_first_order_also_releases(escrow: EscrowService, gateway: FakeGateway, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)
    await escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id)
    final = await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)
    assert final.status == EscrowStatus.RELEASED
    assert len(gateway.transfers) == 1


@pytest.mark.asyncio
async def test_repeat_confirmation_is_idempotent(escrow: EscrowService, gateway: FakeGateway, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)

    first = await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)
    second = await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)

    assert second == first
    actions = [e.action for e in await escrow.audit_trail(hold.hold_id)]
    assert actions.count(EscrowAction.CONFIRMED) == 1
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_confirmation_requires_matching_party(escrow: EscrowService, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)

    with pytest.raises(Unauthorized):
        await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.contractor_id)
    with pytest.raises(Unauthorized):
        await escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, uuid.uuid4())

    unchanged = await escrow.get_hold(hold.hold_id)
    assert not unchanged.homeowner_confirmed and not unchanged.contractor_confirmed


@pytest.mark.asyncio
async def test_confirmation_notifies_other_party(escrow: EscrowService, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)
    await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)

    async with session_factory() as db:
        result = await db.execute(
            select(Notification.kind).where(Notification.user_id == seed.contractor_id)
        )
        kinds = set(result.scalars().all())
    assert "completion_confirmed" in kinds


@pytest.mark.asyncio
@pytest.mark.parametrize("round_", range(5))
async def test_concurrent_confirmations_release_exactly_once(
    escrow: EscrowService, gateway: FakeGateway, session_factory, round_: int
) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)

    results = await asyncio.gather(
        escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id),
        escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id),
    )

    final = await escrow.get_hold(hold.hold_id)
    assert final.status == EscrowStatus.RELEASED
    assert len(gateway.transfers) == 1
    assert gateway.transfer_calls == 1
    assert any(r.status == EscrowStatus.RELEASED for r in results)
    releases = [e for e in await escrow.audit_trail(hold.hold_id) if e.action == EscrowAction.RELEASED]
    assert len(releases) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_confirmations_release_exactly_once(
    escrow: EscrowService, gateway: FakeGateway, session_factory
) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)

    await asyncio.gather(
        escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id),
        escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id),
        escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id),
        escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id),
        return_exceptions=True,
    )

    final = await escrow.get_hold(hold.hold_id)
    assert final.status == EscrowStatus.RELEASED
    assert len(gateway.transfers) == 1


@pytest.mark.asyncio
async def test_release_blocked_until_payouts_enabled(
    escrow: EscrowService, gateway: FakeGateway, session_factory
) -> None:
    seed = await seed_accepted_bid(session_factory, payouts_enabled=False)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)
    await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)

    with pytest.raises(PermanentGatewayError) as exc_info:
        await escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id)
    assert exc_info.value.kind.value == "account_not_ready"

    stuck = await escrow.get_hold(hold.hold_id)
    assert stuck.status == EscrowStatus.CAPTURED
    assert stuck.both_confirmed
    assert stuck.settlement_claim is None
    assert (await escrow.audit_trail(hold.hold_id))[-1].action == EscrowAction.SETTLEMENT_FAILED
    assert gateway.transfers == []

    async with session_factory() as db:
        await db.execute(
            update(PayoutAccount)
            .where(PayoutAccount.contractor_id == seed.contractor_id)
            .values(payouts_enabled=True)
        )
        await db.commit()

    # A repeat confirmation retries the release
    final = await escrow.confirm_completion(hold.hold_id, Party.CONTRACTOR, seed.contractor_id)
    assert final.status == EscrowStatus.RELEASED
    assert len(gateway.transfers) == 1


@pytest.mark.asyncio
async def test_confirm_on_terminal_hold_raises(escrow: EscrowService, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    hold = await escrow.create_hold(seed.bid_id, seed.homeowner_id, seed.contractor_id, seed.amount)
    await escrow.force_release(hold.hold_id, uuid.uuid4(), "work verified by support")
    with pytest.raises(InvalidState):
        await escrow.confirm_completion(hold.hold_id, Party.HOMEOWNER, seed.homeowner_id)
