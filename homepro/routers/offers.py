"""Direct offer endpoints: a homeowner hires one contractor without open bidding."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.auth.middleware import AuthenticatedUser, verify_request
from homepro.auth.rate_limit import check_rate_limit
from homepro.database import get_db
from homepro.schemas.job import BidResponse, DirectOfferCreate, DirectOfferResponse, JobResponse
from homepro.services import job as job_service

router = APIRouter(prefix="/offers", tags=["offers"], dependencies=[Depends(check_rate_limit)])


@router.post("", response_model=DirectOfferResponse, status_code=201)
async def create_offer(
    data: DirectOfferCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> DirectOfferResponse:
    """Homeowner offers a job to a contractor at a fixed price."""
    if auth.role != "homeowner":
        raise HTTPException(status_code=403, detail="Only homeowners can make offers")
    job, bid = await job_service.create_direct_offer(db, auth.user_id, data)
    return DirectOfferResponse(job=JobResponse.model_validate(job), bid=BidResponse.model_validate(bid))


@router.post("/{job_id}/accept", response_model=BidResponse)
async def accept_offer(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    """Contractor accepts; the homeowner pays for the returned bid via /payments/holds."""
    bid = await job_service.accept_offer(db, job_id, auth.user_id)
    return BidResponse.model_validate(bid)


@router.post("/{job_id}/decline", response_model=JobResponse)
async def decline_offer(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.decline_offer(db, job_id, auth.user_id)
    return JobResponse.model_validate(job)
