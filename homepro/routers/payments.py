"""Escrow hold endpoints for homeowners and contractors."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.auth.middleware import AuthenticatedUser, verify_request
from homepro.auth.rate_limit import check_rate_limit
from homepro.database import get_db
from homepro.dependencies import get_escrow_service
from homepro.errors import NotFound
from homepro.models.job import Bid
from homepro.schemas.escrow import (
    ConfirmCompletion,
    DisputeRequest,
    HoldCreate,
    HoldResponse,
    TransactionResponse,
)
from homepro.services.escrow import EscrowService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/holds", response_model=HoldResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def create_hold(
    data: HoldCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Homeowner pays for an accepted bid. Funds are captured and held until completion."""
    result = await db.execute(select(Bid.contractor_id).where(Bid.bid_id == data.bid_id))
    contractor_id = result.scalar_one_or_none()
    if contractor_id is None:
        raise NotFound("Bid not found")
    hold = await escrow.create_hold(data.bid_id, auth.user_id, contractor_id, data.amount)
    return HoldResponse.model_validate(hold)


@router.get("/transactions", response_model=list[TransactionResponse], dependencies=[Depends(check_rate_limit)])
async def list_transactions(
    limit: int = Query(50, ge=1, le=100),
    auth: AuthenticatedUser = Depends(verify_request),
    escrow: EscrowService = Depends(get_escrow_service),
) -> list[TransactionResponse]:
    """Payment history for the caller: charges as a homeowner, payouts as a contractor."""
    holds = await escrow.list_transactions(auth.user_id, limit=limit)
    return [TransactionResponse.for_party(h, auth.user_id) for h in holds]


@router.get("/holds/{hold_id}", response_model=HoldResponse, dependencies=[Depends(check_rate_limit)])
async def get_hold(
    hold_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    hold = await escrow.get_hold(hold_id)
    if not auth.is_admin and hold.party_of(auth.user_id) is None:
        raise HTTPException(status_code=403, detail="Not a party to this payment")
    return HoldResponse.model_validate(hold)


@router.post("/holds/{hold_id}/confirm", response_model=HoldResponse, dependencies=[Depends(check_rate_limit)])
async def confirm_completion(
    hold_id: uuid.UUID,
    data: ConfirmCompletion,
    auth: AuthenticatedUser = Depends(verify_request),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Confirm the job is done. Payment releases once both parties have confirmed."""
    hold = await escrow.confirm_completion(hold_id, data.party, auth.user_id)
    return HoldResponse.model_validate(hold)


@router.post("/holds/{hold_id}/dispute", response_model=HoldResponse, dependencies=[Depends(check_rate_limit)])
async def dispute_hold(
    hold_id: uuid.UUID,
    data: DisputeRequest,
    auth: AuthenticatedUser = Depends(verify_request),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Flag a payment for support review. A disputed hold never releases automatically."""
    hold = await escrow.mark_disputed(hold_id, auth.user_id, data.reason, is_admin=auth.is_admin)
    return HoldResponse.model_validate(hold)
