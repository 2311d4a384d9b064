from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots.gateway import TelegramGateway
from tunedesk.bots.identities import BotRole, load_identities
from tunedesk.cabinet.dependencies import get_cabinet_db
from tunedesk.config import Settings
from tunedesk.main import create_app


SECRET = 'file-admin-secret'
HEADER = 'X-Telegram-Bot-Api-Secret-Token'


@pytest.fixture
def db():
    return AsyncMock(spec=AsyncSession)


@pytest.fixture
def app(db):
    config = Settings(
        TELEGRAM_FILE_ADMIN_ENABLED=True,
        TELEGRAM_FILE_ADMIN_BOT_TOKEN='1:file',
        TELEGRAM_FILE_ADMIN_CHAT_ID='-100200',
        TELEGRAM_FILE_ADMIN_WEBHOOK_SECRET=SECRET,
        TELEGRAM_CUSTOMER_ENABLED=False,
    )
    gateway = TelegramGateway(load_identities(config), bot_factory=MagicMock())
    application = create_app(config, gateway=gateway)

    async def _db():
        yield db

    application.dependency_overrides[get_cabinet_db] = _db
    for bot_router in application.state.webhook_routers.values():
        bot_router.handle_update = AsyncMock()
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def _handler(app, role):
    return app.state.webhook_routers[role].handle_update


def test_valid_update_is_dispatched(app, client, db):
    update = {'update_id': 7, 'message': {'message_id': 1, 'text': '/help', 'chat': {'id': -100200}}}

    response = client.post('/api/telegram/file-admin', json=update, headers={HEADER: SECRET})

    assert response.status_code == 200
    assert response.json() == {'ok': True}
    _handler(app, BotRole.FILE_ADMIN).assert_awaited_once_with(db, update)


def test_wrong_secret_is_acknowledged_and_dropped(app, client):
    response = client.post('/api/telegram/file-admin', json={'update_id': 1}, headers={HEADER: 'guess'})

    assert response.status_code == 200
    assert response.json() == {'ok': True}
    _handler(app, BotRole.FILE_ADMIN).assert_not_awaited()


def test_non_json_body_is_acknowledged(app, client):
    response = client.post(
        '/api/telegram/file-admin',
        content=b'not json',
        headers={HEADER: SECRET, 'Content-Type': 'application/json'},
    )

    assert response.status_code == 200
    _handler(app, BotRole.FILE_ADMIN).assert_not_awaited()


def test_disabled_bot_is_acknowledged_and_ignored(app, client):
    response = client.post('/api/telegram/customer', json={'update_id': 1})

    assert response.status_code == 200
    assert response.json() == {'ok': True}
    _handler(app, BotRole.CUSTOMER).assert_not_awaited()


def test_handler_failure_still_returns_ok(app, client, db):
    _handler(app, BotRole.FILE_ADMIN).side_effect = RuntimeError('boom')

    response = client.post('/api/telegram/file-admin', json={'update_id': 3}, headers={HEADER: SECRET})

    assert response.status_code == 200
    assert response.json() == {'ok': True}
    db.rollback.assert_awaited_once()
