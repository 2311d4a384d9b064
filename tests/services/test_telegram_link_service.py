from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.services import telegram_link_service as link_service
from tunedesk.services.telegram_link_service import LinkOutcome, UnlinkOutcome


T0 = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _user(**overrides):
    fields = dict(
        id='customer-1',
        email='karim@example.com',
        telegram_chat_id=None,
        telegram_username=None,
        telegram_linked_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _patch_lookups(monkeypatch, *, by_email=None, by_chat=None):
    monkeypatch.setattr(link_service, 'get_user_by_email', AsyncMock(return_value=by_email))
    monkeypatch.setattr(link_service, 'get_user_by_telegram_chat_id', AsyncMock(return_value=by_chat))


@pytest.mark.parametrize('email', ['', 'not-an-email', 'a@b', 'two words@example.com'])
async def test_link_rejects_invalid_email(monkeypatch, email):
    _patch_lookups(monkeypatch)
    db = AsyncMock(spec=AsyncSession)

    result = await link_service.link_chat(db, chat_id='777', email=email)

    assert result.outcome is LinkOutcome.INVALID_EMAIL
    link_service.get_user_by_email.assert_not_awaited()


async def test_link_unknown_account(monkeypatch):
    _patch_lookups(monkeypatch)

    result = await link_service.link_chat(AsyncMock(spec=AsyncSession), chat_id='777', email='ghost@example.com')

    assert result.outcome is LinkOutcome.ACCOUNT_NOT_FOUND


async def test_link_account_already_linked_elsewhere(monkeypatch):
    user = _user(telegram_chat_id='111')
    _patch_lookups(monkeypatch, by_email=user)
    db = AsyncMock(spec=AsyncSession)

    result = await link_service.link_chat(db, chat_id='777', email='Karim@Example.com')

    assert result.outcome is LinkOutcome.LINKED_TO_OTHER_CHAT
    assert user.telegram_chat_id == '111'
    db.commit.assert_not_awaited()


async def test_link_chat_already_used_by_another_account(monkeypatch):
    _patch_lookups(monkeypatch, by_email=_user(), by_chat=_user(id='customer-2', email='other@example.com'))

    result = await link_service.link_chat(AsyncMock(spec=AsyncSession), chat_id='777', email='karim@example.com')

    assert result.outcome is LinkOutcome.CHAT_LINKED_TO_OTHER_ACCOUNT


async def test_link_success_normalizes_email(monkeypatch):
    user = _user()
    _patch_lookups(monkeypatch, by_email=user)
    db = AsyncMock(spec=AsyncSession)

    result = await link_service.link_chat(
        db,
        chat_id=777,
        email='  KARIM@example.com ',
        telegram_username='karim_b',
        clock=lambda: T0,
    )

    assert result.ok
    assert user.telegram_chat_id == '777'
    assert user.telegram_username == 'karim_b'
    assert user.telegram_linked_at == T0
    link_service.get_user_by_email.assert_awaited_once_with(db, 'karim@example.com')
    db.commit.assert_awaited_once()


async def test_relinking_same_chat_refreshes_linked_at(monkeypatch):
    user = _user(telegram_chat_id='777', telegram_linked_at=T0)
    _patch_lookups(monkeypatch, by_email=user, by_chat=user)

    later = T0 + timedelta(days=3)
    result = await link_service.link_chat(
        AsyncMock(spec=AsyncSession),
        chat_id='777',
        email='karim@example.com',
        clock=lambda: later,
    )

    assert result.ok
    assert user.telegram_linked_at == later


async def test_unlink_then_link_gets_fresh_timestamp(monkeypatch):
    user = _user(telegram_chat_id='777', telegram_username='karim_b', telegram_linked_at=T0)
    db = AsyncMock(spec=AsyncSession)

    _patch_lookups(monkeypatch, by_chat=user)
    unlinked = await link_service.unlink_chat(db, chat_id='777')
    assert unlinked.outcome is UnlinkOutcome.UNLINKED
    assert user.telegram_chat_id is None
    assert user.telegram_linked_at is None

    _patch_lookups(monkeypatch, by_email=user)
    relinked_at = T0 + timedelta(hours=1)
    linked = await link_service.link_chat(db, chat_id='777', email='karim@example.com', clock=lambda: relinked_at)

    assert linked.ok
    assert user.telegram_chat_id == '777'
    assert user.telegram_linked_at == relinked_at


async def test_unlink_when_not_linked(monkeypatch):
    _patch_lookups(monkeypatch)
    db = AsyncMock(spec=AsyncSession)

    result = await link_service.unlink_chat(db, chat_id='777')

    assert result.outcome is UnlinkOutcome.NOT_LINKED
    db.commit.assert_not_awaited()
