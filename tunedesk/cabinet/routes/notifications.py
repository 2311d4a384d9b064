from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.cabinet.schemas.notifications import (
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from tunedesk.database.crud.user_notification import (
    count_unread_notifications,
    delete_user_notification,
    get_user_notifications,
    mark_all_user_notifications_read,
    mark_user_notification_read,
)
from tunedesk.database.models import User

from ..dependencies import get_cabinet_db, get_current_cabinet_user


router = APIRouter(prefix='/notifications', tags=['Cabinet Notifications'])


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Notification not found')


@router.get('', response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    rows, total = await get_user_notifications(
        db,
        user_id=user.id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
    )
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(row, from_attributes=True) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get('/unread-count', response_model=UnreadCountResponse)
async def unread_count(
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    return UnreadCountResponse(unread_count=await count_unread_notifications(db, user_id=user.id))


@router.post('/read-all')
async def read_all(
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    updated = await mark_all_user_notifications_read(db, user_id=user.id)
    await db.commit()
    return {'success': True, 'updated': updated}


@router.post('/{notification_id}/read')
async def read_one(
    notification_id: int,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if not await mark_user_notification_read(db, notification_id=notification_id, user_id=user.id):
        raise _not_found()
    await db.commit()
    return {'success': True}


@router.delete('/{notification_id}')
async def delete_one(
    notification_id: int,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    if not await delete_user_notification(db, notification_id=notification_id, user_id=user.id):
        raise _not_found()
    await db.commit()
    return {'success': True}
