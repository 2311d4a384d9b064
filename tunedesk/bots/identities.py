from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from tunedesk.config import Settings, settings as default_settings


class BotRole(Enum):
    SUPER_ADMIN = 'super_admin'
    FILE_ADMIN = 'file_admin'
    CUSTOMER = 'customer'

    @property
    def slug(self) -> str:
        return self.value.replace('_', '-')


@dataclass(frozen=True)
class BotIdentity:
    role: BotRole
    token: str
    enabled: bool = False
    webhook_secret: str = ''
    default_chat_id: str | None = None
    allowed_chat_ids: frozenset[str] = field(default_factory=frozenset)
    callback_scopes: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.token)

    @property
    def is_staff(self) -> bool:
        return self.role is not BotRole.CUSTOMER

    @property
    def webhook_path(self) -> str:
        return f'/api/telegram/{self.role.slug}'

    def is_chat_allowed(self, chat_id: str | None) -> bool:
        # Customer bot talks to anyone; staff bots only to allow-listed chats
        if not self.is_staff:
            return chat_id is not None
        return chat_id is not None and chat_id in self.allowed_chat_ids

    def accepts_scope(self, scope: str) -> bool:
        return scope in self.callback_scopes

    def shares_destination_with(self, other: BotIdentity) -> bool:
        return bool(self.token) and self.token == other.token and self.default_chat_id == other.default_chat_id


def load_identities(config: Settings | None = None) -> dict[BotRole, BotIdentity]:
    cfg = config or default_settings

    super_admin_scopes = {BotRole.SUPER_ADMIN.value}
    if cfg.TELEGRAM_ALLOW_CROSS_BOT_CALLBACKS:
        super_admin_scopes.add(BotRole.FILE_ADMIN.value)

    return {
        BotRole.SUPER_ADMIN: BotIdentity(
            role=BotRole.SUPER_ADMIN,
            token=cfg.TELEGRAM_SUPER_ADMIN_BOT_TOKEN,
            enabled=cfg.TELEGRAM_SUPER_ADMIN_ENABLED,
            webhook_secret=cfg.TELEGRAM_SUPER_ADMIN_WEBHOOK_SECRET,
            default_chat_id=cfg.TELEGRAM_SUPER_ADMIN_CHAT_ID or None,
            allowed_chat_ids=frozenset(cfg.allowed_chat_ids(BotRole.SUPER_ADMIN.value)),
            callback_scopes=frozenset(super_admin_scopes),
        ),
        BotRole.FILE_ADMIN: BotIdentity(
            role=BotRole.FILE_ADMIN,
            token=cfg.TELEGRAM_FILE_ADMIN_BOT_TOKEN,
            enabled=cfg.TELEGRAM_FILE_ADMIN_ENABLED,
            webhook_secret=cfg.TELEGRAM_FILE_ADMIN_WEBHOOK_SECRET,
            default_chat_id=cfg.TELEGRAM_FILE_ADMIN_CHAT_ID or None,
            allowed_chat_ids=frozenset(cfg.allowed_chat_ids(BotRole.FILE_ADMIN.value)),
            callback_scopes=frozenset({BotRole.FILE_ADMIN.value}),
        ),
        BotRole.CUSTOMER: BotIdentity(
            role=BotRole.CUSTOMER,
            token=cfg.TELEGRAM_CUSTOMER_BOT_TOKEN,
            enabled=cfg.TELEGRAM_CUSTOMER_ENABLED,
            webhook_secret=cfg.TELEGRAM_CUSTOMER_WEBHOOK_SECRET,
            callback_scopes=frozenset({BotRole.CUSTOMER.value}),
        ),
    }
