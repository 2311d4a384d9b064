from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.database.crud.user import get_user_by_email, get_user_by_telegram_chat_id
from tunedesk.database.models import User


logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class LinkOutcome(Enum):
    LINKED = 'linked'
    INVALID_EMAIL = 'invalid_email'
    ACCOUNT_NOT_FOUND = 'account_not_found'
    LINKED_TO_OTHER_CHAT = 'linked_to_other_chat'
    CHAT_LINKED_TO_OTHER_ACCOUNT = 'chat_linked_to_other_account'


class UnlinkOutcome(Enum):
    UNLINKED = 'unlinked'
    NOT_LINKED = 'not_linked'


@dataclass
class LinkResult:
    outcome: LinkOutcome
    user: User | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is LinkOutcome.LINKED


@dataclass
class UnlinkResult:
    outcome: UnlinkOutcome
    user: User | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is UnlinkOutcome.UNLINKED


def normalize_email(raw: str | None) -> str:
    return (raw or '').strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def _now_utc() -> datetime:
    return datetime.now(UTC)


async def link_chat(
    db: AsyncSession,
    *,
    chat_id: str,
    email: str,
    telegram_username: str | None = None,
    clock: Callable[[], datetime] = _now_utc,
) -> LinkResult:
    """Bind a customer-bot chat to the account owning ``email``.

    Linking the same chat again refreshes ``telegram_linked_at``.
    """
    chat_id = str(chat_id)
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        return LinkResult(LinkOutcome.INVALID_EMAIL)

    user = await get_user_by_email(db, normalized)
    if user is None:
        return LinkResult(LinkOutcome.ACCOUNT_NOT_FOUND)

    if user.telegram_chat_id and user.telegram_chat_id != chat_id:
        return LinkResult(LinkOutcome.LINKED_TO_OTHER_CHAT, user)

    chat_owner = await get_user_by_telegram_chat_id(db, chat_id)
    if chat_owner is not None and chat_owner.id != user.id:
        return LinkResult(LinkOutcome.CHAT_LINKED_TO_OTHER_ACCOUNT, chat_owner)

    user.telegram_chat_id = chat_id
    user.telegram_username = telegram_username
    user.telegram_linked_at = clock()
    try:
        await db.commit()
    except IntegrityError:
        # Another request linked this chat between the check and the commit
        await db.rollback()
        logger.warning('Telegram chat link lost a race', chat_id=chat_id, user_id=user.id)
        return LinkResult(LinkOutcome.CHAT_LINKED_TO_OTHER_ACCOUNT)

    logger.info('Telegram chat linked', chat_id=chat_id, user_id=user.id)
    return LinkResult(LinkOutcome.LINKED, user)


async def unlink_chat(db: AsyncSession, *, chat_id: str) -> UnlinkResult:
    user = await get_user_by_telegram_chat_id(db, str(chat_id))
    if user is None:
        return UnlinkResult(UnlinkOutcome.NOT_LINKED)

    user.telegram_chat_id = None
    user.telegram_username = None
    user.telegram_linked_at = None
    await db.commit()

    logger.info('Telegram chat unlinked', chat_id=chat_id, user_id=user.id)
    return UnlinkResult(UnlinkOutcome.UNLINKED, user)
