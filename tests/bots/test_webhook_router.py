from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots import webhook_router
from tunedesk.bots.gateway import TelegramGateway
from tunedesk.bots.identities import BotIdentity, BotRole
from tunedesk.bots.webhook_router import WebhookRouter
from tunedesk.database.models import AuditAction, FileStatus
from tunedesk.services import file_lifecycle_service as lifecycle
from tunedesk.services.file_lifecycle_service import FileLifecycleController, MutationResult
from tunedesk.services.telegram_link_service import LinkOutcome, LinkResult, UnlinkOutcome, UnlinkResult


FILE_ID = '3f2b6c1e-9a4d-4c1b-8f0e-2d5a7b9c1e42'
ADMIN_CHAT = '-100200'


def _identity(role=BotRole.FILE_ADMIN, scopes=None, allowed=(ADMIN_CHAT,)):
    return BotIdentity(
        role=role,
        token='123:abc',
        enabled=True,
        default_chat_id=ADMIN_CHAT if role is not BotRole.CUSTOMER else None,
        allowed_chat_ids=frozenset(allowed) if role is not BotRole.CUSTOMER else frozenset(),
        callback_scopes=frozenset(scopes or {role.value}),
    )


def _file(**overrides):
    fields = dict(
        id=FILE_ID,
        user_id='customer-1',
        original_filename='golf7_stage1.bin',
        status='PENDING',
        payment_status='NOT_PAID',
        price=Decimal('0'),
        estimated_processing_time=None,
        estimated_processing_time_set_at=None,
        modified_r2_key='modified/golf7_stage1.bin',
        updated_date=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _callback(data, chat_id=ADMIN_CHAT, query_id='cb-1'):
    return {
        'update_id': 1,
        'callback_query': {
            'id': query_id,
            'data': data,
            'from': {'id': 42, 'username': 'tuner'},
            'message': {'message_id': 10, 'chat': {'id': int(chat_id)}, 'text': 'alert'},
        },
    }


def _message(text, chat_id='5550001'):
    return {'update_id': 2, 'message': {'message_id': 11, 'text': text, 'chat': {'id': int(chat_id)}}}


def _router(identity, controller=None):
    gateway = AsyncMock(spec=TelegramGateway)
    factory = MagicMock(return_value=controller or AsyncMock(spec=FileLifecycleController))
    return WebhookRouter(identity, gateway, factory), gateway, factory


async def test_callback_from_unlisted_chat_is_acknowledged_without_mutation():
    router, gateway, factory = _router(_identity())

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'file_admin_status_{FILE_ID}_READY', chat_id='-999'))

    factory.assert_not_called()
    gateway.answer_callback.assert_awaited_once()
    assert 'Not authorized' in gateway.answer_callback.await_args.kwargs['text']


async def test_customer_bot_never_mutates_files():
    router, gateway, factory = _router(_identity(BotRole.CUSTOMER))

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'file_admin_status_{FILE_ID}_READY'))

    factory.assert_not_called()
    gateway.answer_callback.assert_awaited_once()


async def test_replayed_status_callback_audits_once_and_acks_twice(monkeypatch):
    file = _file(status='PENDING')
    audit = AsyncMock()
    monkeypatch.setattr(lifecycle, 'get_tuning_file_for_update', AsyncMock(return_value=file))
    monkeypatch.setattr(lifecycle, 'append_audit_entry', audit)
    db = AsyncMock(spec=AsyncSession)
    gateway = AsyncMock(spec=TelegramGateway)
    router = WebhookRouter(_identity(), gateway, lambda session: FileLifecycleController(session))

    update = _callback(f'file_admin_status_{FILE_ID}_READY')
    await router.handle_update(db, update)
    await router.handle_update(db, update)

    assert file.status == 'READY'
    assert [call.kwargs['action'] for call in audit.await_args_list] == [AuditAction.STATUS_CHANGE]
    answers = [call.kwargs['text'] for call in gateway.answer_callback.await_args_list]
    assert len(answers) == 2
    assert 'updated to READY' in answers[0]
    assert 'already READY' in answers[1]
    assert audit.await_args.kwargs['actor_id'] == 'bot:file_admin'


async def test_status_callback_from_any_scope_is_recognised():
    controller = AsyncMock(spec=FileLifecycleController)
    controller.set_status.return_value = MutationResult(file=_file(status='READY'), new_value='READY')
    router, gateway, _ = _router(_identity(), controller)

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'legacy_status_{FILE_ID}_READY'))

    controller.set_status.assert_awaited_once()
    assert controller.set_status.await_args.kwargs['skip_if_unchanged'] is True


async def test_super_admin_rejects_file_admin_scope_without_cross_routing():
    router, gateway, factory = _router(_identity(BotRole.SUPER_ADMIN))

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'file_admin_estimated_time_{FILE_ID}'))

    factory.assert_not_called()
    assert gateway.answer_callback.await_args.kwargs['text'] == 'Unknown action'


async def test_super_admin_accepts_file_admin_scope_with_cross_routing(monkeypatch):
    monkeypatch.setattr(webhook_router, 'get_tuning_file', AsyncMock(return_value=_file()))
    identity = _identity(BotRole.SUPER_ADMIN, scopes={'super_admin', 'file_admin'})
    router, gateway, _ = _router(identity)

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'file_admin_estimated_time_{FILE_ID}'))

    gateway.edit_message.assert_awaited_once()
    markup = gateway.edit_message.await_args.kwargs['reply_markup']
    first_button = markup.inline_keyboard[0][0]
    assert first_button.callback_data == f'file_admin_time_{FILE_ID}_5'
    assert first_button.text == '5 minutes'


@pytest.mark.parametrize(
    ('status', 'expected_call'),
    [('RECEIVED', 'set_status'), ('PENDING', 'set_estimated_time')],
)
async def test_time_callback_moves_to_pending_or_updates_estimate(monkeypatch, status, expected_call):
    monkeypatch.setattr(webhook_router, 'get_tuning_file', AsyncMock(return_value=_file(status=status)))
    controller = AsyncMock(spec=FileLifecycleController)
    result = MutationResult(file=_file(status='PENDING', estimated_processing_time=60))
    controller.set_status.return_value = result
    controller.set_estimated_time.return_value = result
    router, gateway, _ = _router(_identity(), controller)

    await router.handle_update(AsyncMock(spec=AsyncSession), _callback(f'file_admin_time_{FILE_ID}_60'))

    getattr(controller, expected_call).assert_awaited_once()
    if expected_call == 'set_status':
        args = controller.set_status.await_args
        assert args.args[1] is FileStatus.PENDING
        assert args.kwargs['estimated_minutes'] == 60
    assert gateway.answer_callback.await_args.kwargs['text'] == '⏰ Estimated time set to 1 hour'


async def test_rejected_mutation_rolls_back_and_alerts():
    controller = AsyncMock(spec=FileLifecycleController)
    controller.set_status.side_effect = HTTPException(
        status_code=400,
        detail={'error_code': 'MODIFIED_FILE_REQUIRED', 'field': 'status', 'message': 'Upload the modified file first'},
    )
    router, gateway, _ = _router(_identity(), controller)
    db = AsyncMock(spec=AsyncSession)

    await router.handle_update(db, _callback(f'file_admin_status_{FILE_ID}_READY'))

    db.rollback.assert_awaited_once()
    kwargs = gateway.answer_callback.await_args.kwargs
    assert kwargs['text'] == '❌ Upload the modified file first'
    assert kwargs['show_alert'] is True


async def test_malformed_update_is_ignored():
    router, gateway, factory = _router(_identity())

    await router.handle_update(AsyncMock(spec=AsyncSession), {'callback_query': {'data': 'x'}})

    factory.assert_not_called()
    gateway.answer_callback.assert_not_awaited()


@pytest.mark.parametrize(
    'outcome',
    [
        LinkOutcome.LINKED,
        LinkOutcome.INVALID_EMAIL,
        LinkOutcome.ACCOUNT_NOT_FOUND,
        LinkOutcome.LINKED_TO_OTHER_CHAT,
        LinkOutcome.CHAT_LINKED_TO_OTHER_ACCOUNT,
    ],
)
async def test_link_command_replies_per_outcome(monkeypatch, outcome):
    link = AsyncMock(return_value=LinkResult(outcome))
    monkeypatch.setattr(webhook_router, 'link_chat', link)
    router, gateway, _ = _router(_identity(BotRole.CUSTOMER))

    await router.handle_update(AsyncMock(spec=AsyncSession), _message('/link Karim@Example.com'))

    assert link.await_args.kwargs['email'] == 'Karim@Example.com'
    assert link.await_args.kwargs['chat_id'] == '5550001'
    role, chat_id, text = gateway.send_message.await_args.args
    assert role is BotRole.CUSTOMER
    assert chat_id == '5550001'
    assert text == webhook_router.LINK_MESSAGES[outcome]


async def test_unlink_when_not_linked(monkeypatch):
    monkeypatch.setattr(webhook_router, 'unlink_chat', AsyncMock(return_value=UnlinkResult(UnlinkOutcome.NOT_LINKED)))
    router, gateway, _ = _router(_identity(BotRole.CUSTOMER))

    await router.handle_update(AsyncMock(spec=AsyncSession), _message('/unlink'))

    assert 'not linked' in gateway.send_message.await_args.args[2]


async def test_files_command_requires_link(monkeypatch):
    monkeypatch.setattr(webhook_router, 'get_user_by_telegram_chat_id', AsyncMock(return_value=None))
    router, gateway, _ = _router(_identity(BotRole.CUSTOMER))

    await router.handle_update(AsyncMock(spec=AsyncSession), _message('/files'))

    assert '/link' in gateway.send_message.await_args.args[2]


async def test_pending_command_lists_files_with_own_scope_buttons(monkeypatch):
    monkeypatch.setattr(webhook_router, 'get_open_tuning_files', AsyncMock(return_value=[_file(status='RECEIVED')]))
    router, gateway, _ = _router(_identity(BotRole.SUPER_ADMIN))

    await router.handle_update(AsyncMock(spec=AsyncSession), _message('/pending', chat_id=ADMIN_CHAT))

    assert gateway.send_message.await_count == 2
    markup = gateway.send_message.await_args.kwargs['reply_markup']
    assert markup.inline_keyboard[0][0].callback_data == f'super_admin_status_{FILE_ID}_READY'


async def test_admin_commands_refused_in_unlisted_chat(monkeypatch):
    listing = AsyncMock(return_value=[])
    monkeypatch.setattr(webhook_router, 'get_open_tuning_files', listing)
    router, gateway, _ = _router(_identity())

    await router.handle_update(AsyncMock(spec=AsyncSession), _message('/pending', chat_id='-999'))

    listing.assert_not_awaited()
    assert 'not authorized' in gateway.send_message.await_args.args[2]
