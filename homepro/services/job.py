"""Job lifecycle and bidding business logic.

Status changes that can race (first bid, accepting a bid) are conditional
UPDATEs on the job row; the partial unique index on bids backs up the
one-accepted-bid-per-job rule at the database level.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.errors import Conflict, InvalidState, NotFound, Unauthorized, ValidationError
from homepro.models.escrow import EscrowHold, EscrowStatus
from homepro.models.job import OPEN_FOR_BIDS, VALID_TRANSITIONS, Bid, BidStatus, Job, JobStatus
from homepro.schemas.job import BidCreate, DirectOfferCreate, JobCreate
from homepro.services.notifications import notify

logger = logging.getLogger(__name__)


def _assert_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidState if the job status transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot transition job from {current.value} to {target.value}")


async def _get_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    result = await db.execute(select(Job).where(Job.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFound("Job not found")
    return job


async def _get_bid(db: AsyncSession, job_id: uuid.UUID, bid_id: uuid.UUID) -> Bid:
    result = await db.execute(select(Bid).where(Bid.bid_id == bid_id, Bid.job_id == job_id))
    bid = result.scalar_one_or_none()
    if bid is None:
        raise NotFound("Bid not found")
    return bid


async def _live_hold(db: AsyncSession, job_id: uuid.UUID) -> EscrowHold | None:
    result = await db.execute(
        select(EscrowHold).where(
            EscrowHold.job_id == job_id,
            EscrowHold.status.in_([EscrowStatus.CAPTURED, EscrowStatus.DISPUTED]),
        )
    )
    return result.scalars().first()


async def post_job(db: AsyncSession, homeowner_id: uuid.UUID, data: JobCreate) -> Job:
    """Homeowner posts a new job; it waits in pending until the first bid."""
    job = Job(
        job_id=uuid.uuid4(),
        homeowner_id=homeowner_id,
        title=data.title,
        description=data.description,
        category=data.category,
        address=data.address,
        budget=data.budget,
        status=JobStatus.PENDING,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return job


async def get_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    return await _get_job(db, job_id)


async def submit_bid(
    db: AsyncSession, job_id: uuid.UUID, contractor_id: uuid.UUID, data: BidCreate
) -> Bid:
    """Contractor bids. The first bid moves the job from pending to bidding."""
    job = await _get_job(db, job_id)
    if job.status not in OPEN_FOR_BIDS:
        raise InvalidState(f"Job is not open for bids, currently {job.status.value}")
    if job.offered_to is not None:
        raise InvalidState("This job was offered directly to a contractor")
    if job.homeowner_id == contractor_id:
        raise ValidationError("Cannot bid on your own job")

    existing = await db.execute(
        select(Bid).where(
            Bid.job_id == job_id,
            Bid.contractor_id == contractor_id,
            Bid.status == BidStatus.PENDING,
        )
    )
    if existing.scalars().first() is not None:
        raise Conflict("You already have a pending bid on this job")

    bid = Bid(
        bid_id=uuid.uuid4(),
        job_id=job_id,
        contractor_id=contractor_id,
        amount=data.amount,
        message=data.message,
        status=BidStatus.PENDING,
    )
    db.add(bid)

    await db.execute(
        update(Job)
        .where(Job.job_id == job_id, Job.status == JobStatus.PENDING)
        .values(status=JobStatus.BIDDING, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    await notify(
        db, job.homeowner_id, "bid_received", "New Bid Received",
        f"A contractor bid ${data.amount} on \"{job.title}\".",
        job_id=job_id, bid_id=bid.bid_id,
    )
    await db.commit()
    await db.refresh(bid)
    return bid


async def list_bids(db: AsyncSession, job_id: uuid.UUID, user_id: uuid.UUID) -> list[Bid]:
    """The homeowner sees every bid on the job; a contractor sees only their own."""
    job = await _get_job(db, job_id)
    query = select(Bid).where(Bid.job_id == job_id).order_by(Bid.created_at)
    if user_id != job.homeowner_id:
        query = query.where(Bid.contractor_id == user_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def _take_acceptance(db: AsyncSession, job: Job, bid: Bid) -> list[Bid]:
    """Conditionally move the job to bid_accepted and accept ``bid``.

    Every other pending bid on the job is rejected and returned. The caller
    notifies and commits.
    """
    now = datetime.now(UTC)
    claimed = await db.execute(
        update(Job)
        .where(
            Job.job_id == job.job_id,
            Job.accepted_bid_id.is_(None),
            Job.status.in_(OPEN_FOR_BIDS),
        )
        .values(status=JobStatus.BID_ACCEPTED, accepted_bid_id=bid.bid_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        raise Conflict("This job already has an accepted bid")

    accepted = await db.execute(
        update(Bid)
        .where(Bid.bid_id == bid.bid_id, Bid.status == BidStatus.PENDING)
        .values(status=BidStatus.ACCEPTED, decided_at=now)
        .execution_options(synchronize_session=False)
    )
    if accepted.rowcount != 1:
        await db.rollback()
        raise InvalidState("Bid is no longer pending")

    others = await db.execute(
        select(Bid).where(
            Bid.job_id == job.job_id, Bid.bid_id != bid.bid_id, Bid.status == BidStatus.PENDING
        )
    )
    rejected = list(others.scalars().all())
    await db.execute(
        update(Bid)
        .where(Bid.job_id == job.job_id, Bid.bid_id != bid.bid_id, Bid.status == BidStatus.PENDING)
        .values(status=BidStatus.REJECTED, decided_at=now)
        .execution_options(synchronize_session=False)
    )
    return rejected


async def _commit_acceptance(db: AsyncSession) -> None:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("This job already has an accepted bid")


async def accept_bid(
    db: AsyncSession, job_id: uuid.UUID, bid_id: uuid.UUID, homeowner_id: uuid.UUID
) -> Bid:
    """Homeowner accepts one bid. Exclusive: every other pending bid is rejected.

    Raises Conflict if the job already has an accepted bid.
    """
    job = await _get_job(db, job_id)
    if job.homeowner_id != homeowner_id:
        raise Unauthorized("Only the homeowner can accept bids")
    if job.offered_to is not None:
        raise InvalidState("A direct offer is accepted by the contractor it was offered to")
    if job.accepted_bid_id is not None:
        raise Conflict("This job already has an accepted bid")
    _assert_transition(job.status, JobStatus.BID_ACCEPTED)

    bid = await _get_bid(db, job_id, bid_id)
    if bid.status != BidStatus.PENDING:
        raise InvalidState(f"Bid is {bid.status.value}, only pending bids can be accepted")

    rejected = await _take_acceptance(db, job, bid)
    await notify(
        db, bid.contractor_id, "bid_accepted", "Bid Accepted!",
        f"Your bid on \"{job.title}\" was accepted. Work can start once payment is secured.",
        job_id=job_id, bid_id=bid_id,
    )
    for other in rejected:
        await notify(
            db, other.contractor_id, "bid_rejected", "Bid Not Accepted",
            f"Your bid on \"{job.title}\" was not accepted.",
            job_id=job_id, bid_id=other.bid_id,
        )
    await _commit_acceptance(db)

    logger.info("Bid %s accepted on job %s, %d other bids rejected", bid_id, job_id, len(rejected))
    await db.refresh(job)
    await db.refresh(bid)
    return bid


async def reject_bid(
    db: AsyncSession, job_id: uuid.UUID, bid_id: uuid.UUID, homeowner_id: uuid.UUID
) -> Bid:
    job = await _get_job(db, job_id)
    if job.homeowner_id != homeowner_id:
        raise Unauthorized("Only the homeowner can reject bids")
    bid = await _get_bid(db, job_id, bid_id)
    if bid.status != BidStatus.PENDING:
        raise InvalidState(f"Bid is {bid.status.value}, only pending bids can be rejected")

    bid.status = BidStatus.REJECTED
    bid.decided_at = datetime.now(UTC)
    await notify(
        db, bid.contractor_id, "bid_rejected", "Bid Not Accepted",
        f"Your bid on \"{job.title}\" was not accepted.",
        job_id=job_id, bid_id=bid_id,
    )
    await db.commit()
    await db.refresh(bid)
    return bid


async def withdraw_bid(
    db: AsyncSession, job_id: uuid.UUID, bid_id: uuid.UUID, contractor_id: uuid.UUID
) -> Bid:
    bid = await _get_bid(db, job_id, bid_id)
    if bid.contractor_id != contractor_id:
        raise Unauthorized("Only the bidding contractor can withdraw this bid")
    if bid.status != BidStatus.PENDING:
        raise InvalidState(f"Bid is {bid.status.value}, only pending bids can be withdrawn")

    bid.status = BidStatus.WITHDRAWN
    bid.decided_at = datetime.now(UTC)
    await db.commit()
    await db.refresh(bid)
    return bid


# --- direct offers ---


async def create_direct_offer(
    db: AsyncSession, homeowner_id: uuid.UUID, data: DirectOfferCreate
) -> tuple[Job, Bid]:
    """Homeowner offers a job straight to one contractor at a fixed price.

    The offer is stored as a job in bidding with a single pending bid for the
    offered amount, so once the contractor accepts it the homeowner pays for
    it exactly like an accepted bid.
    """
    if data.contractor_id == homeowner_id:
        raise ValidationError("Cannot offer a job to yourself")

    job = Job(
        job_id=uuid.uuid4(),
        homeowner_id=homeowner_id,
        title=data.title,
        description=data.description,
        category=data.category,
        address=data.address,
        budget=data.amount,
        status=JobStatus.BIDDING,
        offered_to=data.contractor_id,
    )
    db.add(job)
    await db.flush()
    bid = Bid(
        bid_id=uuid.uuid4(),
        job_id=job.job_id,
        contractor_id=data.contractor_id,
        amount=data.amount,
        message=data.message,
        status=BidStatus.PENDING,
    )
    db.add(bid)
    await notify(
        db, data.contractor_id, "direct_offer", "New Job Offer",
        f"A homeowner offered you \"{data.title}\" for ${data.amount}.",
        job_id=job.job_id, bid_id=bid.bid_id,
    )
    await db.commit()
    await db.refresh(job)
    await db.refresh(bid)
    logger.info("Direct offer %s for job %s sent to contractor %s", bid.bid_id, job.job_id, data.contractor_id)
    return job, bid


async def _get_offer(db: AsyncSession, job_id: uuid.UUID, contractor_id: uuid.UUID) -> tuple[Job, Bid]:
    job = await _get_job(db, job_id)
    if job.offered_to is None:
        raise NotFound("Offer not found")
    if job.offered_to != contractor_id:
        raise Unauthorized("This offer was made to another contractor")
    result = await db.execute(
        select(Bid).where(Bid.job_id == job_id, Bid.contractor_id == contractor_id).order_by(Bid.created_at)
    )
    bid = result.scalars().first()
    if bid is None:
        raise NotFound("Offer not found")
    return job, bid


async def accept_offer(db: AsyncSession, job_id: uuid.UUID, contractor_id: uuid.UUID) -> Bid:
    """Contractor accepts a direct offer; the job then waits for the homeowner's payment."""
    job, bid = await _get_offer(db, job_id, contractor_id)
    if bid.status != BidStatus.PENDING:
        raise InvalidState(f"Offer is {bid.status.value}, only pending offers can be accepted")
    _assert_transition(job.status, JobStatus.BID_ACCEPTED)

    await _take_acceptance(db, job, bid)
    await notify(
        db, job.homeowner_id, "offer_accepted", "Offer Accepted!",
        f"Your offer for \"{job.title}\" was accepted. Pay ${bid.amount} to secure the contractor.",
        job_id=job_id, bid_id=bid.bid_id,
    )
    await _commit_acceptance(db)

    logger.info("Direct offer %s accepted on job %s", bid.bid_id, job_id)
    await db.refresh(job)
    await db.refresh(bid)
    return bid


async def decline_offer(db: AsyncSession, job_id: uuid.UUID, contractor_id: uuid.UUID) -> Job:
    """Contractor turns a direct offer down, which cancels the job."""
    job, bid = await _get_offer(db, job_id, contractor_id)
    if bid.status != BidStatus.PENDING:
        raise InvalidState(f"Offer is {bid.status.value}, only pending offers can be declined")
    _assert_transition(job.status, JobStatus.CANCELLED)

    bid.status = BidStatus.WITHDRAWN
    bid.decided_at = datetime.now(UTC)
    await db.flush()
    await mark_cancelled(db, job_id)
    await notify(
        db, job.homeowner_id, "offer_declined", "Offer Declined",
        f"The contractor declined your offer for \"{job.title}\".",
        job_id=job_id, bid_id=bid.bid_id,
    )
    await db.commit()
    await db.refresh(job)
    logger.info("Direct offer %s declined on job %s", bid.bid_id, job_id)
    return job


async def mark_confirmed(db: AsyncSession, job_id: uuid.UUID) -> bool:
    """bid_accepted → confirmed once the payment hold exists. The caller commits."""
    result = await db.execute(
        update(Job)
        .where(Job.job_id == job_id, Job.status == JobStatus.BID_ACCEPTED)
        .values(status=JobStatus.CONFIRMED, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def confirm_arrival(db: AsyncSession, job_id: uuid.UUID, contractor_id: uuid.UUID) -> Job:
    """Contractor of the accepted bid arrives on site: confirmed → in_progress."""
    job = await _get_job(db, job_id)
    if job.accepted_bid_id is None:
        raise InvalidState("Job has no accepted bid")
    bid = await _get_bid(db, job_id, job.accepted_bid_id)
    if bid.contractor_id != contractor_id:
        raise Unauthorized("You are not assigned to this job")
    _assert_transition(job.status, JobStatus.IN_PROGRESS)

    job.status = JobStatus.IN_PROGRESS
    job.arrived_at = datetime.now(UTC)
    await notify(
        db, job.homeowner_id, "contractor_arrived", "Contractor Has Arrived!",
        "Your contractor has arrived at the job location. Work is now in progress.",
        job_id=job_id, bid_id=job.accepted_bid_id,
    )
    await db.commit()
    await db.refresh(job)
    return job


async def mark_completed(db: AsyncSession, job_id: uuid.UUID) -> bool:
    """Job completes when its hold is released. The caller commits."""
    now = datetime.now(UTC)
    result = await db.execute(
        update(Job)
        .where(Job.job_id == job_id, Job.status.in_([JobStatus.CONFIRMED, JobStatus.IN_PROGRESS]))
        .values(status=JobStatus.COMPLETED, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Job %s not in a completable state after release", job_id)
        return False
    return True


async def mark_cancelled(db: AsyncSession, job_id: uuid.UUID) -> bool:
    """Cancel after a refund; pending bids are rejected. The caller commits."""
    now = datetime.now(UTC)
    result = await db.execute(
        update(Job)
        .where(Job.job_id == job_id, Job.status.not_in([JobStatus.COMPLETED, JobStatus.CANCELLED]))
        .values(status=JobStatus.CANCELLED, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(Bid)
        .where(Bid.job_id == job_id, Bid.status == BidStatus.PENDING)
        .values(status=BidStatus.REJECTED, decided_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def cancel_job(
    db: AsyncSession, job_id: uuid.UUID, actor_id: uuid.UUID, is_admin: bool = False
) -> Job:
    """Homeowner or admin cancels a job that has no live payment hold.

    Jobs with funds in escrow must be refunded first (an admin action).
    """
    job = await _get_job(db, job_id)
    if not is_admin and job.homeowner_id != actor_id:
        raise Unauthorized("Only the homeowner or an admin can cancel this job")
    _assert_transition(job.status, JobStatus.CANCELLED)
    if await _live_hold(db, job_id) is not None:
        raise Conflict("Job has funds held in escrow; the hold must be refunded before cancelling")

    await mark_cancelled(db, job_id)
    await db.commit()
    await db.refresh(job)
    logger.info("Job %s cancelled by %s", job_id, actor_id)
    return job
