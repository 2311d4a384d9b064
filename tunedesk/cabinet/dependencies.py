from collections.abc import AsyncGenerator

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.database.crud.user import get_user_by_id
from tunedesk.database.database import AsyncSessionLocal
from tunedesk.database.models import User
from tunedesk.services.file_lifecycle_service import FileLifecycleController
from tunedesk.services.live_push import LivePushRegistry
from tunedesk.services.notification_service import NotificationService


logger = structlog.get_logger(__name__)


async def get_cabinet_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


def get_push_registry(request: Request) -> LivePushRegistry:
    return request.app.state.push_registry


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


def get_file_controller(
    db: AsyncSession = Depends(get_cabinet_db),
    notifier: NotificationService = Depends(get_notification_service),
) -> FileLifecycleController:
    return FileLifecycleController(db, notifier)


async def get_current_cabinet_user(
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    db: AsyncSession = Depends(get_cabinet_db),
) -> User:
    """Resolve the account the trusted upstream authenticated."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authenticated')
    user = await get_user_by_id(db, x_user_id.strip())
    if user is None:
        logger.warning('Unknown user in auth header', user_id=x_user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authenticated')
    return user


async def require_staff(user: User = Depends(get_current_cabinet_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admin access required')
    return user
