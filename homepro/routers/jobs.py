"""Job and bidding endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.auth.middleware import AuthenticatedUser, verify_request
from homepro.auth.rate_limit import check_rate_limit
from homepro.database import get_db
from homepro.dependencies import get_escrow_service
from homepro.errors import NotFound
from homepro.models.escrow import EscrowStatus
from homepro.schemas.escrow import HoldResponse
from homepro.schemas.job import BidCreate, BidResponse, CancelJob, JobCreate, JobResponse
from homepro.services import job as job_service
from homepro.services.escrow import EscrowService

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _require_role(auth: AuthenticatedUser, role: str) -> None:
    if auth.role != role:
        raise HTTPException(status_code=403, detail=f"Only a {role} can do this")


@router.post("", response_model=JobResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def post_job(
    data: JobCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Homeowner posts a job."""
    _require_role(auth, "homeowner")
    job = await job_service.post_job(db, auth.user_id, data)
    return JobResponse.model_validate(job)


@router.get("/{job_id}", response_model=JobResponse, dependencies=[Depends(check_rate_limit)])
async def get_job(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.get_job(db, job_id)
    return JobResponse.model_validate(job)


@router.get("/{job_id}/hold", response_model=HoldResponse, dependencies=[Depends(check_rate_limit)])
async def get_job_hold(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Current payment hold for a job. Only the two parties (or an admin) can view it."""
    hold = await escrow.get_hold_for_job(job_id)
    if not auth.is_admin and hold.party_of(auth.user_id) is None:
        raise HTTPException(status_code=403, detail="Not a party to this job")
    return HoldResponse.model_validate(hold)


@router.post(
    "/{job_id}/bids", response_model=BidResponse, status_code=201, dependencies=[Depends(check_rate_limit)]
)
async def submit_bid(
    job_id: uuid.UUID,
    data: BidCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    """Contractor bids on an open job."""
    _require_role(auth, "contractor")
    bid = await job_service.submit_bid(db, job_id, auth.user_id, data)
    return BidResponse.model_validate(bid)


@router.get("/{job_id}/bids", response_model=list[BidResponse], dependencies=[Depends(check_rate_limit)])
async def list_bids(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[BidResponse]:
    bids = await job_service.list_bids(db, job_id, auth.user_id)
    return [BidResponse.model_validate(b) for b in bids]


@router.post(
    "/{job_id}/bids/{bid_id}/accept", response_model=BidResponse, dependencies=[Depends(check_rate_limit)]
)
async def accept_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    """Homeowner accepts a bid; every other pending bid is rejected."""
    bid = await job_service.accept_bid(db, job_id, bid_id, auth.user_id)
    return BidResponse.model_validate(bid)


@router.post(
    "/{job_id}/bids/{bid_id}/reject", response_model=BidResponse, dependencies=[Depends(check_rate_limit)]
)
async def reject_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    bid = await job_service.reject_bid(db, job_id, bid_id, auth.user_id)
    return BidResponse.model_validate(bid)


@router.post(
    "/{job_id}/bids/{bid_id}/withdraw", response_model=BidResponse, dependencies=[Depends(check_rate_limit)]
)
async def withdraw_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    bid = await job_service.withdraw_bid(db, job_id, bid_id, auth.user_id)
    return BidResponse.model_validate(bid)


@router.post("/{job_id}/arrival", response_model=JobResponse, dependencies=[Depends(check_rate_limit)])
async def confirm_arrival(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Contractor confirms arrival on site; work is now in progress."""
    job = await job_service.confirm_arrival(db, job_id, auth.user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse, dependencies=[Depends(check_rate_limit)])
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelJob | None = None,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    """Cancel a job. An admin cancel refunds any held payment first."""
    if auth.is_admin:
        try:
            hold = await escrow.get_hold_for_job(job_id)
        except NotFound:
            hold = None
        if hold is not None and hold.status in (EscrowStatus.CAPTURED, EscrowStatus.DISPUTED):
            reason = (data.reason if data else None) or "Job cancelled by admin"
            await escrow.refund(hold.hold_id, auth.user_id, reason)
            job = await job_service.get_job(db, job_id)
            return JobResponse.model_validate(job)

    job = await job_service.cancel_job(db, job_id, auth.user_id, is_admin=auth.is_admin)
    return JobResponse.model_validate(job)
