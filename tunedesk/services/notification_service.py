from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiogram import html
from aiogram.types import InlineKeyboardMarkup
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tunedesk.bots.gateway import TelegramGateway
from tunedesk.bots.identities import BotRole
from tunedesk.database.crud.user import get_staff_users, get_user_by_id
from tunedesk.database.crud.user_notification import create_user_notification
from tunedesk.database.database import AsyncSessionLocal
from tunedesk.database.models import User
from tunedesk.services.delivery import (
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    CHANNEL_RECORD,
    CHANNEL_TELEGRAM,
    DeliveryResult,
    FanOutReport,
)
from tunedesk.services.email_service import EMAIL_WORTHY_TYPES, EmailSender, build_notification_email
from tunedesk.services.live_push import LivePushRegistry


logger = structlog.get_logger(__name__)

# Customer-facing
FILE_RECEIVED = 'FILE_RECEIVED'
FILE_STATUS_UPDATE = 'FILE_STATUS_UPDATE'
FILE_READY = 'FILE_READY'
FILE_ESTIMATED_TIME = 'FILE_ESTIMATED_TIME'
PRICE_SET = 'PRICE_SET'
PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED'
FILE_ADMIN_COMMENT = 'FILE_ADMIN_COMMENT'

# Staff-facing
NEW_FILE_UPLOAD = 'NEW_FILE_UPLOAD'
FILE_UPDATE_BY_ADMIN = 'FILE_UPDATE_BY_ADMIN'

CHAT_WORTHY_TYPES = frozenset(
    {
        FILE_RECEIVED,
        FILE_STATUS_UPDATE,
        FILE_READY,
        FILE_ESTIMATED_TIME,
        PRICE_SET,
        PAYMENT_CONFIRMED,
        FILE_ADMIN_COMMENT,
    }
)

ALL_CHANNELS = frozenset({CHANNEL_RECORD, CHANNEL_TELEGRAM, CHANNEL_EMAIL, CHANNEL_PUSH})
STAFF_CHANNELS = frozenset({CHANNEL_RECORD, CHANNEL_PUSH})

DEFAULT_PUSH_TYPE = 'notification'


@dataclass
class NotificationEvent:
    notification_type: str
    user_id: str
    title: str
    message: str
    file_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    push_type: str | None = None
    chat_buttons: InlineKeyboardMarkup | None = None

    def for_user(self, user_id: str) -> NotificationEvent:
        return NotificationEvent(
            notification_type=self.notification_type,
            user_id=user_id,
            title=self.title,
            message=self.message,
            file_id=self.file_id,
            payload=dict(self.payload),
            push_type=self.push_type,
            chat_buttons=self.chat_buttons,
        )

    def push_message(self) -> dict[str, Any]:
        return {
            'type': self.push_type or DEFAULT_PUSH_TYPE,
            'notificationType': self.notification_type,
            'title': self.title,
            'message': self.message,
            **({'fileId': self.file_id} if self.file_id else {}),
            **self.payload,
        }


class NotificationService:
    """Delivers one event over every channel it qualifies for.

    The in-app record is committed first in its own session, so a failed write
    never rolls back or expires anything the caller has loaded. Chat, email and
    live push follow, each isolated so one failing channel never blocks the others.
    """

    def __init__(
        self,
        *,
        registry: LivePushRegistry,
        gateway: TelegramGateway | None = None,
        email_sender: EmailSender | None = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.registry = registry
        self.gateway = gateway
        self.email_sender = email_sender
        self.session_factory = session_factory

    async def _guard(
        self,
        channel: str,
        event: NotificationEvent,
        send: Callable[[], Awaitable[DeliveryResult]],
    ) -> DeliveryResult:
        try:
            return await send()
        except Exception as exc:
            logger.warning(
                'Notification channel failed',
                user_id=event.user_id,
                notification_type=event.notification_type,
                channel=channel,
                exc=exc,
            )
            return DeliveryResult.failed(channel, exc)

    async def _record(self, event: NotificationEvent) -> DeliveryResult:
        async with self.session_factory() as session:
            await create_user_notification(
                session,
                user_id=event.user_id,
                notification_type=event.notification_type,
                title=event.title,
                message=event.message,
                file_id=event.file_id,
                payload=event.payload,
            )
            await session.commit()
        return DeliveryResult.delivered(CHANNEL_RECORD)

    async def _chat(self, user: User | None, event: NotificationEvent) -> DeliveryResult:
        if event.notification_type not in CHAT_WORTHY_TYPES:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, 'type not chat-worthy')
        if self.gateway is None:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, 'no telegram gateway')
        if user is None or not user.telegram_chat_id:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, 'no linked chat')
        text = f'{html.bold(html.quote(event.title))}\n\n{html.quote(event.message)}'
        return await self.gateway.send_message(
            BotRole.CUSTOMER,
            user.telegram_chat_id,
            text,
            reply_markup=event.chat_buttons,
        )

    async def _email(self, user: User | None, event: NotificationEvent) -> DeliveryResult:
        if event.notification_type not in EMAIL_WORTHY_TYPES:
            return DeliveryResult.skip(CHANNEL_EMAIL, 'type not email-worthy')
        if self.email_sender is None:
            return DeliveryResult.skip(CHANNEL_EMAIL, 'no email sender')
        if user is None or not user.email:
            return DeliveryResult.skip(CHANNEL_EMAIL, 'no email address')
        message = build_notification_email(
            event.notification_type,
            to=user.email,
            recipient_name=user.full_name,
            message=event.message,
            file_id=event.file_id,
        )
        return await self.email_sender.send(message)

    async def _push(self, event: NotificationEvent) -> DeliveryResult:
        if await self.registry.push(event.user_id, event.push_message()):
            return DeliveryResult.delivered(CHANNEL_PUSH)
        return DeliveryResult.skip(CHANNEL_PUSH, 'not connected')

    async def _load_recipient(self, db: AsyncSession, event: NotificationEvent) -> User | None:
        try:
            return await get_user_by_id(db, event.user_id)
        except Exception as exc:
            logger.warning('Failed to load notification recipient', user_id=event.user_id, exc=exc)
            return None

    async def notify(
        self,
        db: AsyncSession,
        event: NotificationEvent,
        *,
        channels: frozenset[str] = ALL_CHANNELS,
    ) -> FanOutReport:
        report = FanOutReport(user_id=event.user_id, notification_type=event.notification_type)

        if CHANNEL_RECORD in channels:
            report.add(await self._guard(CHANNEL_RECORD, event, lambda: self._record(event)))

        user = None
        if channels & {CHANNEL_TELEGRAM, CHANNEL_EMAIL}:
            user = await self._load_recipient(db, event)
        if CHANNEL_TELEGRAM in channels:
            report.add(await self._guard(CHANNEL_TELEGRAM, event, lambda: self._chat(user, event)))
        if CHANNEL_EMAIL in channels:
            report.add(await self._guard(CHANNEL_EMAIL, event, lambda: self._email(user, event)))
        if CHANNEL_PUSH in channels:
            report.add(await self._guard(CHANNEL_PUSH, event, lambda: self._push(event)))

        for failure in report.failures:
            logger.warning(
                'Notification delivery incomplete',
                user_id=event.user_id,
                notification_type=event.notification_type,
                channel=failure.channel,
                detail=failure.detail,
            )
        return report

    async def notify_staff(
        self,
        db: AsyncSession,
        event: NotificationEvent,
        *,
        exclude_user_id: str | None = None,
    ) -> list[FanOutReport]:
        """Record and push ``event`` for every staff user; ``event.user_id`` is replaced per recipient."""
        try:
            staff = await get_staff_users(db)
        except Exception as exc:
            logger.warning('Failed to load staff users', notification_type=event.notification_type, exc=exc)
            return []

        reports = []
        for member in staff:
            if member.id == exclude_user_id:
                continue
            reports.append(await self.notify(db, event.for_user(member.id), channels=STAFF_CHANNELS))
        return reports

    async def alert_staff_chats(
        self,
        text: str,
        keyboard_for: Callable[[str], InlineKeyboardMarkup] | None = None,
    ) -> list[DeliveryResult]:
        """Post ``text`` to the admin bot chats, each with buttons scoped to that bot.

        When both admin identities point at the same bot and chat the alert is
        sent once, through the file-admin identity.
        """
        if self.gateway is None:
            return []

        file_admin = self.gateway.identity(BotRole.FILE_ADMIN)
        super_admin = self.gateway.identity(BotRole.SUPER_ADMIN)
        targets = [BotRole.FILE_ADMIN]
        if not (file_admin.is_configured and super_admin.shares_destination_with(file_admin)):
            targets.append(BotRole.SUPER_ADMIN)

        results = []
        for role in targets:
            identity = self.gateway.identity(role)
            if not identity.is_configured:
                results.append(DeliveryResult.skip(CHANNEL_TELEGRAM, f'{role.value} bot disabled'))
                continue
            try:
                markup = keyboard_for(role.value) if keyboard_for else None
                results.append(await self.gateway.send_message(role, None, text, reply_markup=markup))
            except Exception as exc:
                logger.warning('Staff chat alert failed', bot=role.value, exc=exc)
                results.append(DeliveryResult.failed(CHANNEL_TELEGRAM, exc))
        return results
