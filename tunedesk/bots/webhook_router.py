from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from aiogram import html
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots.callback_data import (
    SUBJECT_CANCEL,
    SUBJECT_ESTIMATED_TIME,
    SUBJECT_STATUS,
    SUBJECT_TIME,
    CallbackPayload,
    parse_callback_data,
)
from tunedesk.bots.gateway import TelegramGateway
from tunedesk.bots.identities import BotIdentity
from tunedesk.bots.keyboards import estimate_picker_keyboard, file_status_keyboard
from tunedesk.bots.schemas import TelegramCallbackQuery, TelegramMessage, TelegramUpdate
from tunedesk.database.crud.tuning_file import get_open_tuning_files, get_tuning_file, get_user_tuning_files
from tunedesk.database.crud.user import get_user_by_telegram_chat_id
from tunedesk.database.models import FileStatus
from tunedesk.services.countdown import compute_countdown, format_time_text
from tunedesk.services.file_lifecycle_service import Actor, FileLifecycleController
from tunedesk.services.telegram_link_service import LinkOutcome, UnlinkOutcome, link_chat, unlink_chat


logger = structlog.get_logger(__name__)

ControllerFactory = Callable[[AsyncSession], FileLifecycleController]

STATUS_ICONS = {
    FileStatus.RECEIVED.value: '📥',
    FileStatus.PENDING.value: '⏳',
    FileStatus.READY.value: '✅',
}

LINK_MESSAGES = {
    LinkOutcome.LINKED: '✅ Your Telegram is now linked to your account. File updates will arrive here.',
    LinkOutcome.INVALID_EMAIL: '❌ Please send a valid email address: /link you@example.com',
    LinkOutcome.ACCOUNT_NOT_FOUND: '❌ No account was found with that email address.',
    LinkOutcome.LINKED_TO_OTHER_CHAT: (
        '❌ That account is already linked to another Telegram chat. Send /unlink from that chat first.'
    ),
    LinkOutcome.CHAT_LINKED_TO_OTHER_ACCOUNT: (
        '❌ This chat is already linked to another account. Send /unlink first.'
    ),
}

UNLINK_MESSAGES = {
    UnlinkOutcome.UNLINKED: '✅ This chat is no longer linked. You will not receive file updates here.',
    UnlinkOutcome.NOT_LINKED: 'ℹ️ This chat is not linked to any account.',
}

CUSTOMER_HELP = (
    '👋 Welcome!\n\n'
    'Link your account to receive updates about your tuning files:\n'
    '/link you@example.com - link this chat to your account\n'
    '/files - show your latest files\n'
    '/unlink - stop receiving updates here\n'
    '/help - show this message'
)

ADMIN_HELP = (
    '🛠 File administration\n\n'
    'Use the buttons on upload alerts to move files between statuses.\n'
    '/pending - list files waiting for processing\n'
    '/help - show this message'
)


def _error_text(exc: HTTPException) -> str:
    detail = exc.detail
    if isinstance(detail, dict):
        return str(detail.get('message') or detail.get('error_code') or 'Request failed')
    if isinstance(detail, str):
        return detail
    return 'Request failed'


def _file_summary(file) -> str:
    icon = STATUS_ICONS.get(file.status, '📄')
    lines = [
        f'📄 {html.bold(html.quote(file.original_filename))}',
        f'{icon} Status: {html.bold(file.status)}',
    ]
    owner = getattr(file, 'user', None)
    if owner is not None:
        lines.append(f'👤 {html.quote(owner.full_name)}')
    countdown = compute_countdown(file)
    if file.status == FileStatus.PENDING.value and countdown is not None:
        remaining_minutes = -(-countdown.remaining_ms // 60_000)
        if countdown.expired:
            lines.append(f'⏰ Estimate: {countdown.time_text} (overdue)')
        else:
            lines.append(f'⏰ Estimate: {countdown.time_text}, about {format_time_text(remaining_minutes)} left')
    lines.append(f'🆔 {html.code(file.id)}')
    return '\n'.join(lines)


def _parse_command(text: str) -> tuple[str, str]:
    head, _, rest = text.strip().partition(' ')
    command = head.split('@', 1)[0].lower()
    return command, rest.strip()


class WebhookRouter:
    """Turns inbound updates for one bot identity into controller calls and chat replies.

    Nothing here raises to the webhook endpoint: failures become a chat answer
    or a log line, and Telegram always sees the update as handled.
    """

    def __init__(
        self,
        identity: BotIdentity,
        gateway: TelegramGateway,
        controller_factory: ControllerFactory,
    ):
        self.identity = identity
        self.gateway = gateway
        self.controller_factory = controller_factory

    @property
    def role(self):
        return self.identity.role

    async def handle_update(self, db: AsyncSession, raw: dict[str, Any]) -> None:
        try:
            update = TelegramUpdate.model_validate(raw)
        except ValidationError as exc:
            logger.warning('Ignoring malformed Telegram update', bot=self.role.value, exc=exc)
            return

        if update.callback_query is not None:
            await self.handle_callback(db, update.callback_query)
        elif update.message is not None and update.message.text:
            await self.handle_message(db, update.message)

    async def _reply(self, chat_id: str, text: str, reply_markup=None) -> None:
        await self.gateway.send_message(self.role, chat_id, text, reply_markup=reply_markup)

    async def _answer(self, query: TelegramCallbackQuery, text: str, show_alert: bool = False) -> None:
        await self.gateway.answer_callback(self.role, query.id, text=text, show_alert=show_alert)

    # Callbacks

    async def handle_callback(self, db: AsyncSession, query: TelegramCallbackQuery) -> None:
        chat_id = query.chat_id
        if not self.identity.is_staff:
            await self._answer(query, 'This action is not available here.')
            return
        if not self.identity.is_chat_allowed(chat_id):
            logger.warning('Rejected callback from unauthorized chat', bot=self.role.value, chat_id=chat_id)
            await self._answer(query, '⛔ Not authorized', show_alert=True)
            return

        payload = parse_callback_data(query.data)
        if payload is None:
            logger.warning('Unparseable callback data', bot=self.role.value, data=query.data)
            await self._answer(query, 'Unknown action')
            return
        # Status buttons are honoured from any scope; everything else must match this bot
        if payload.subject != SUBJECT_STATUS and not self.identity.accepts_scope(payload.scope):
            logger.warning('Callback scope not accepted', bot=self.role.value, scope=payload.scope, subject=payload.subject)
            await self._answer(query, 'Unknown action')
            return

        username = query.from_user.username if query.from_user else None
        actor = Actor.bot(self.role.value, username)
        try:
            if payload.subject == SUBJECT_STATUS:
                await self._apply_status(db, query, payload, actor)
            elif payload.subject == SUBJECT_ESTIMATED_TIME:
                await self._show_estimate_picker(db, query, payload)
            elif payload.subject == SUBJECT_TIME:
                await self._apply_estimate(db, query, payload, actor)
            elif payload.subject == SUBJECT_CANCEL:
                await self._restore_status_keyboard(db, query, payload)
            else:
                await self._answer(query, 'Unknown action')
        except HTTPException as exc:
            await db.rollback()
            logger.warning(
                'File action rejected',
                bot=self.role.value,
                file_id=payload.file_id,
                subject=payload.subject,
                detail=exc.detail,
            )
            await self._answer(query, f'❌ {_error_text(exc)}', show_alert=True)

    async def _refresh_message(self, query: TelegramCallbackQuery, file, scope: str) -> None:
        if query.message is None or query.message.message_id is None:
            return
        await self.gateway.edit_message(
            self.role,
            query.message.chat_id,
            query.message.message_id,
            _file_summary(file),
            reply_markup=file_status_keyboard(scope, file.id, file.status),
        )

    async def _apply_status(self, db, query, payload: CallbackPayload, actor: Actor) -> None:
        new_status = payload.status
        result = await self.controller_factory(db).set_status(
            payload.file_id,
            new_status,
            actor,
            skip_if_unchanged=True,
        )
        if result.changed:
            await self._answer(query, f'✅ Status updated to {result.new_value}')
        else:
            await self._answer(query, f'ℹ️ Status is already {result.new_value}')
        await self._refresh_message(query, result.file, payload.scope)

    async def _show_estimate_picker(self, db, query, payload: CallbackPayload) -> None:
        file = await get_tuning_file(db, payload.file_id)
        if file is None:
            await self._answer(query, '❌ File not found', show_alert=True)
            return
        await self._answer(query, 'Choose the estimated processing time')
        if query.message is not None and query.message.message_id is not None:
            await self.gateway.edit_message(
                self.role,
                query.message.chat_id,
                query.message.message_id,
                f'{_file_summary(file)}\n\n⏰ Choose the estimated processing time:',
                reply_markup=estimate_picker_keyboard(payload.scope, file.id),
            )

    async def _apply_estimate(self, db, query, payload: CallbackPayload, actor: Actor) -> None:
        if not payload.argument or not payload.argument.isdigit():
            await self._answer(query, '❌ Invalid time', show_alert=True)
            return
        minutes = int(payload.argument)

        file = await get_tuning_file(db, payload.file_id)
        if file is None:
            await self._answer(query, '❌ File not found', show_alert=True)
            return

        controller = self.controller_factory(db)
        if file.status == FileStatus.PENDING.value:
            result = await controller.set_estimated_time(payload.file_id, minutes, actor)
        else:
            result = await controller.set_status(payload.file_id, FileStatus.PENDING, actor, estimated_minutes=minutes)
        await self._answer(query, f'⏰ Estimated time set to {format_time_text(minutes)}')
        await self._refresh_message(query, result.file, payload.scope)

    async def _restore_status_keyboard(self, db, query, payload: CallbackPayload) -> None:
        file = await get_tuning_file(db, payload.file_id)
        await self._answer(query, 'Cancelled')
        if file is not None:
            await self._refresh_message(query, file, payload.scope)

    # Messages

    async def handle_message(self, db: AsyncSession, message: TelegramMessage) -> None:
        if self.identity.is_staff:
            await self._handle_admin_message(db, message)
        else:
            await self._handle_customer_message(db, message)

    async def _handle_admin_message(self, db: AsyncSession, message: TelegramMessage) -> None:
        chat_id = message.chat_id
        if not self.identity.is_chat_allowed(chat_id):
            logger.warning('Rejected message from unauthorized chat', bot=self.role.value, chat_id=chat_id)
            await self._reply(chat_id, '⛔ This chat is not authorized to manage files.')
            return

        command, _ = _parse_command(message.text)
        if command in ('/start', '/help'):
            await self._reply(chat_id, ADMIN_HELP)
        elif command == '/pending':
            await self._send_pending(db, chat_id)
        else:
            await self._reply(chat_id, 'Unknown command. Send /help for the list of commands.')

    async def _send_pending(self, db: AsyncSession, chat_id: str) -> None:
        files = await get_open_tuning_files(db)
        if not files:
            await self._reply(chat_id, '🎉 No files are waiting for processing.')
            return
        await self._reply(chat_id, f'📋 {len(files)} file(s) waiting for processing:')
        for file in files:
            await self._reply(
                chat_id,
                _file_summary(file),
                reply_markup=file_status_keyboard(self.role.value, file.id, file.status),
            )

    async def _handle_customer_message(self, db: AsyncSession, message: TelegramMessage) -> None:
        chat_id = message.chat_id
        command, argument = _parse_command(message.text)

        if command in ('/start', '/help'):
            await self._reply(chat_id, CUSTOMER_HELP)
        elif command == '/link':
            username = message.from_user.username if message.from_user else None
            result = await link_chat(db, chat_id=chat_id, email=argument, telegram_username=username)
            if result.outcome is not LinkOutcome.LINKED:
                logger.info('Telegram link refused', chat_id=chat_id, outcome=result.outcome.value)
            await self._reply(chat_id, LINK_MESSAGES[result.outcome])
        elif command == '/unlink':
            result = await unlink_chat(db, chat_id=chat_id)
            await self._reply(chat_id, UNLINK_MESSAGES[result.outcome])
        elif command == '/files':
            await self._send_customer_files(db, chat_id)
        else:
            await self._reply(chat_id, 'Send /help to see what I can do.')

    async def _send_customer_files(self, db: AsyncSession, chat_id: str) -> None:
        user = await get_user_by_telegram_chat_id(db, chat_id)
        if user is None:
            await self._reply(chat_id, 'Link your account first: /link you@example.com')
            return
        files = await get_user_tuning_files(db, user.id, limit=5)
        if not files:
            await self._reply(chat_id, 'You have not uploaded any files yet.')
            return
        blocks = []
        for file in files:
            icon = STATUS_ICONS.get(file.status, '📄')
            line = f'{icon} {html.bold(html.quote(file.original_filename))}: {file.status}'
            countdown = compute_countdown(file)
            if file.status == FileStatus.PENDING.value and countdown is not None and not countdown.expired:
                line += f' (about {format_time_text(-(-countdown.remaining_ms // 60_000))} left)'
            blocks.append(line)
        await self._reply(chat_id, '📂 Your latest files:\n\n' + '\n'.join(blocks))
