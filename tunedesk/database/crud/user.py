from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.database.models import User


async def get_user_by_id(db: AsyncSession, user_id: str) -> User | None:
    return await db.get(User, user_id)


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_user_by_telegram_chat_id(db: AsyncSession, chat_id: str) -> User | None:
    result = await db.execute(select(User).where(User.telegram_chat_id == str(chat_id)))
    return result.scalar_one_or_none()


async def get_staff_users(db: AsyncSession) -> list[User]:
    result = await db.execute(select(User).where(User.is_admin.is_(True)))
    return list(result.scalars().all())
