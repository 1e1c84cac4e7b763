"""In-app notification inbox."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.auth.middleware import AuthenticatedUser, verify_request
from homepro.auth.rate_limit import check_rate_limit
from homepro.database import get_db
from homepro.schemas.payout import NotificationResponse
from homepro.services import notifications as notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(check_rate_limit)])


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[NotificationResponse]:
    rows = await notification_service.list_notifications(db, auth.user_id, unread_only, limit)
    return [NotificationResponse.model_validate(n) for n in rows]


@router.post("/{notification_id}/read", status_code=204)
async def mark_read(
    notification_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> None:
    await notification_service.mark_read(db, auth.user_id, notification_id)
