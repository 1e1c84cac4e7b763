"""In-app notifications.

Rows are written in the caller's transaction; the BaaS broadcasts inserts on
the notifications table to subscribed clients, so there is no delivery step
here.
"""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from homepro.errors import NotFound
from homepro.models.notification import Notification

logger = logging.getLogger(__name__)


async def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    kind: str,
    title: str,
    message: str,
    job_id: uuid.UUID | None = None,
    bid_id: uuid.UUID | None = None,
) -> Notification:
    """Add a notification row. The caller commits."""
    notification = Notification(
        notification_id=uuid.uuid4(),
        user_id=user_id,
        kind=kind,
        title=title,
        message=message,
        job_id=job_id,
        bid_id=bid_id,
    )
    db.add(notification)
    logger.info("Notification queued: %s → %s", kind, user_id)
    return notification


async def list_notifications(
    db: AsyncSession, user_id: uuid.UUID, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    query = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    if unread_only:
        query = query.where(Notification.read.is_(False))
    result = await db.execute(query)
    return list(result.scalars().all())


async def mark_read(db: AsyncSession, user_id: uuid.UUID, notification_id: uuid.UUID) -> None:
    result = await db.execute(
        update(Notification)
        .where(Notification.notification_id == notification_id, Notification.user_id == user_id)
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise NotFound("Notification not found")
    await db.commit()
