from __future__ import annotations

from collections.abc import Callable

import structlog
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types import InlineKeyboardMarkup, LinkPreviewOptions

from tunedesk.bots.identities import BotIdentity, BotRole
from tunedesk.services.delivery import CHANNEL_TELEGRAM, DeliveryResult


logger = structlog.get_logger(__name__)

ALLOWED_UPDATES = ['message', 'callback_query']
NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


def _default_bot_factory(token: str) -> Bot:
    return Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))


class TelegramGateway:
    """Outbound Bot API for the three bot identities.

    Every call is best effort and returns a ``DeliveryResult``; Bot API errors
    never escape to the caller.
    """

    def __init__(
        self,
        identities: dict[BotRole, BotIdentity],
        bot_factory: Callable[[str], Bot] = _default_bot_factory,
    ):
        self.identities = identities
        self._bot_factory = bot_factory
        self._bots: dict[str, Bot] = {}

    def identity(self, role: BotRole) -> BotIdentity:
        return self.identities[role]

    def _bot_for(self, identity: BotIdentity) -> Bot:
        # Identities sharing a token share one client session
        bot = self._bots.get(identity.token)
        if bot is None:
            bot = self._bot_factory(identity.token)
            self._bots[identity.token] = bot
        return bot

    async def send_message(
        self,
        role: BotRole,
        chat_id: str | None,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> DeliveryResult:
        identity = self.identities[role]
        if not identity.is_configured:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, f'{role.value} bot disabled')
        target = chat_id or identity.default_chat_id
        if not target:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, f'no chat for {role.value} bot')
        try:
            await self._bot_for(identity).send_message(
                chat_id=target,
                text=text,
                reply_markup=reply_markup,
                link_preview_options=NO_PREVIEW,
            )
        except Exception as exc:
            logger.warning('Telegram send_message failed', bot=role.value, chat_id=target, exc=exc)
            return DeliveryResult.failed(CHANNEL_TELEGRAM, exc)
        return DeliveryResult.delivered(CHANNEL_TELEGRAM, detail=f'{role.value}:{target}')

    async def answer_callback(
        self,
        role: BotRole,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> DeliveryResult:
        identity = self.identities[role]
        if not identity.is_configured:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, f'{role.value} bot disabled')
        try:
            await self._bot_for(identity).answer_callback_query(
                callback_query_id=callback_query_id,
                text=text,
                show_alert=show_alert,
            )
        except Exception as exc:
            logger.warning('Telegram answer_callback_query failed', bot=role.value, exc=exc)
            return DeliveryResult.failed(CHANNEL_TELEGRAM, exc)
        return DeliveryResult.delivered(CHANNEL_TELEGRAM)

    async def edit_message(
        self,
        role: BotRole,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> DeliveryResult:
        identity = self.identities[role]
        if not identity.is_configured:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, f'{role.value} bot disabled')
        try:
            await self._bot_for(identity).edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup,
                link_preview_options=NO_PREVIEW,
            )
        except Exception as exc:
            # "message is not modified" lands here too; harmless
            logger.info('Telegram edit_message_text failed', bot=role.value, chat_id=chat_id, exc=exc)
            return DeliveryResult.failed(CHANNEL_TELEGRAM, exc)
        return DeliveryResult.delivered(CHANNEL_TELEGRAM)

    async def set_webhook(self, role: BotRole, url: str) -> DeliveryResult:
        identity = self.identities[role]
        if not identity.is_configured:
            return DeliveryResult.skip(CHANNEL_TELEGRAM, f'{role.value} bot disabled')
        try:
            await self._bot_for(identity).set_webhook(
                url=url,
                allowed_updates=ALLOWED_UPDATES,
                secret_token=identity.webhook_secret or None,
                drop_pending_updates=False,
            )
        except Exception as exc:
            logger.error('Telegram set_webhook failed', bot=role.value, url=url, exc=exc)
            return DeliveryResult.failed(CHANNEL_TELEGRAM, exc)
        logger.info('Telegram webhook registered', bot=role.value, url=url)
        return DeliveryResult.delivered(CHANNEL_TELEGRAM, detail=url)

    async def register_webhooks(self, base_url: str) -> dict[BotRole, DeliveryResult]:
        results = {}
        for role, identity in self.identities.items():
            results[role] = await self.set_webhook(role, base_url.rstrip('/') + identity.webhook_path)
        return results

    async def close(self) -> None:
        for bot in self._bots.values():
            try:
                await bot.session.close()
            except Exception as exc:
                logger.warning('Failed to close Telegram bot session', exc=exc)
        self._bots.clear()
