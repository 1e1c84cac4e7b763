"""Fee schedule endpoint. Public, no auth required."""

from fastapi import APIRouter, Depends

from homepro.dependencies import get_escrow_service
from homepro.services.escrow import EscrowService
from homepro.services.fees import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule(escrow: EscrowService = Depends(get_escrow_service)) -> dict:
    """Current platform fee.

    The fee is deducted from the contractor payout; the homeowner pays the
    bid amount and nothing more.
    """
    return get_fee_schedule(escrow.fee_policy)
