"""Support/admin overrides on escrow holds. Every override lands in the audit log."""

import uuid

from fastapi import APIRouter, Depends, Query

from homepro.auth.middleware import AuthenticatedUser, require_admin
from homepro.auth.rate_limit import check_rate_limit
from homepro.dependencies import get_escrow_service
from homepro.models.escrow import EscrowStatus
from homepro.schemas.escrow import AdminAction, AuditEntryResponse, HoldResponse
from homepro.services.escrow import EscrowService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(check_rate_limit)])


@router.get("/holds", response_model=list[HoldResponse])
async def list_holds(
    status: EscrowStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin: AuthenticatedUser = Depends(require_admin),
    escrow: EscrowService = Depends(get_escrow_service),
) -> list[HoldResponse]:
    holds = await escrow.list_holds(status=status, limit=limit)
    return [HoldResponse.model_validate(h) for h in holds]


@router.post("/holds/{hold_id}/force-release", response_model=HoldResponse)
async def force_release(
    hold_id: uuid.UUID,
    data: AdminAction,
    admin: AuthenticatedUser = Depends(require_admin),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Pay the contractor without waiting for both confirmations."""
    hold = await escrow.force_release(hold_id, admin.user_id, data.reason)
    return HoldResponse.model_validate(hold)


@router.post("/holds/{hold_id}/refund", response_model=HoldResponse)
async def refund(
    hold_id: uuid.UUID,
    data: AdminAction,
    admin: AuthenticatedUser = Depends(require_admin),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Return the full amount to the homeowner."""
    hold = await escrow.refund(hold_id, admin.user_id, data.reason)
    return HoldResponse.model_validate(hold)


@router.post("/holds/{hold_id}/reconcile", response_model=HoldResponse)
async def reconcile(
    hold_id: uuid.UUID,
    admin: AuthenticatedUser = Depends(require_admin),
    escrow: EscrowService = Depends(get_escrow_service),
) -> HoldResponse:
    """Retry a release that failed after both parties confirmed."""
    hold = await escrow.retry_settlement(hold_id, admin.user_id)
    return HoldResponse.model_validate(hold)


@router.get("/holds/{hold_id}/audit", response_model=list[AuditEntryResponse])
async def audit_trail(
    hold_id: uuid.UUID,
    admin: AuthenticatedUser = Depends(require_admin),
    escrow: EscrowService = Depends(get_escrow_service),
) -> list[AuditEntryResponse]:
    entries = await escrow.audit_trail(hold_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]
