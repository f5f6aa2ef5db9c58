"""
services/notification/router.py
The traveller's and host's in-app inbox. Rows are created by the delivery
worker (tasks/notification_tasks.py); here they are only listed and marked read.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import NotificationNotFoundError
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, User
from shared.schemas.schemas import MessageResponse, NotificationResponse
from shared.utils.clock import Clock, get_clock

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _unread(user: User):
    return (Notification.user_id == user.id, Notification.is_read.is_(False))


@router.get("", response_model=list[NotificationResponse])
async def list_inbox(
    unread_only: bool = Query(False),
    booking_id: Optional[UUID] = Query(None, description="Only notifications about this booking"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conditions = _unread(current_user) if unread_only else (Notification.user_id == current_user.id,)
    if booking_id is not None:
        conditions += (Notification.booking_id == booking_id,)

    rows = await db.scalars(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc(), Notification.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [NotificationResponse.model_validate(n) for n in rows]


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(select(func.count(Notification.id)).where(*_unread(current_user)))
    return {"unread_count": count or 0}


@router.post("/read-all", response_model=MessageResponse)
async def mark_inbox_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = await db.execute(
        update(Notification).where(*_unread(current_user)).values(is_read=True, read_at=clock.now())
    )
    return MessageResponse(message=f"{result.rowcount} notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_one_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    notification = await db.get(Notification, notification_id)
    # Someone else's notification is reported as missing
    if notification is None or notification.user_id != current_user.id:
        raise NotificationNotFoundError("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = clock.now()
    return MessageResponse(message="Marked as read")
