"""Just enough of the Bot API update shape for routing; unknown fields are ignored."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class TelegramChat(_Lenient):
    id: str

    @field_validator('id', mode='before')
    @classmethod
    def _coerce_id(cls, value):
        return str(value)


class TelegramSender(_Lenient):
    id: int
    username: str | None = None
    first_name: str | None = None


class TelegramMessage(_Lenient):
    message_id: int | None = None
    text: str | None = None
    chat: TelegramChat
    from_user: TelegramSender | None = Field(default=None, alias='from')

    @property
    def chat_id(self) -> str:
        return self.chat.id


class TelegramCallbackQuery(_Lenient):
    id: str
    data: str | None = None
    message: TelegramMessage | None = None
    from_user: TelegramSender | None = Field(default=None, alias='from')

    @property
    def chat_id(self) -> str | None:
        return self.message.chat_id if self.message else None


class TelegramUpdate(_Lenient):
    update_id: int | None = None
    message: TelegramMessage | None = None
    callback_query: TelegramCallbackQuery | None = None
