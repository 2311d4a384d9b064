from datetime import UTC, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.database.models import UserNotification


async def create_user_notification(
    db: AsyncSession,
    *,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    file_id: str | None = None,
    payload: dict | None = None,
) -> UserNotification:
    notification = UserNotification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        file_id=file_id,
        payload=payload or {},
    )
    db.add(notification)
    await db.flush()
    return notification


async def get_user_notifications(
    db: AsyncSession,
    *,
    user_id: str,
    limit: int = 20,
    offset: int = 0,
    unread_only: bool = False,
) -> tuple[list[UserNotification], int]:
    query = select(UserNotification).where(UserNotification.user_id == user_id)
    total_query = select(func.count(UserNotification.id)).where(UserNotification.user_id == user_id)
    if unread_only:
        query = query.where(UserNotification.is_read.is_(False))
        total_query = total_query.where(UserNotification.is_read.is_(False))

    query = (
        query.order_by(UserNotification.created_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 100)))
    )

    rows = (await db.execute(query)).scalars().all()
    total = int((await db.execute(total_query)).scalar() or 0)
    return rows, total


async def count_unread_notifications(db: AsyncSession, *, user_id: str) -> int:
    result = await db.execute(
        select(func.count(UserNotification.id)).where(
            UserNotification.user_id == user_id,
            UserNotification.is_read.is_(False),
        )
    )
    return int(result.scalar() or 0)


async def mark_user_notification_read(
    db: AsyncSession,
    *,
    notification_id: int,
    user_id: str,
) -> bool:
    notification = await db.get(UserNotification, notification_id)
    if not notification or notification.user_id != user_id:
        return False

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(UTC)
        await db.flush()
    return True


async def mark_all_user_notifications_read(db: AsyncSession, *, user_id: str) -> int:
    result = await db.execute(
        update(UserNotification)
        .where(UserNotification.user_id == user_id, UserNotification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(UTC))
    )
    await db.flush()
    return int(result.rowcount or 0)


async def delete_user_notification(db: AsyncSession, *, notification_id: int, user_id: str) -> bool:
    result = await db.execute(
        delete(UserNotification).where(
            UserNotification.id == notification_id,
            UserNotification.user_id == user_id,
        )
    )
    await db.flush()
    return bool(result.rowcount)
