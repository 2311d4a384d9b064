from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tunedesk.database.models import Base, TuningFile, User, UserNotification
from tunedesk.services import notification_service
from tunedesk.services.delivery import CHANNEL_RECORD
from tunedesk.services.file_lifecycle_service import Actor, FileLifecycleController
from tunedesk.services.live_push import LivePushRegistry
from tunedesk.services.notification_service import NotificationService


FILE_ID = '3f2b6c1e-9a4d-4c1b-8f0e-2d5a7b9c1e42'
ADMIN = Actor(id='admin-1', display_name='Admin One', user_id='admin-1')


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "tunedesk.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                User(id='customer-1', email='karim@example.com', first_name='Karim'),
                User(id='admin-1', email='admin1@example.com', is_admin=True),
                User(id='admin-2', email='admin2@example.com', is_admin=True),
                TuningFile(
                    id=FILE_ID,
                    user_id='customer-1',
                    original_filename='golf7_stage1.bin',
                    r2_key='uploads/customer-1/golf7_stage1.bin',
                    file_size=2048,
                ),
            ]
        )
        await session.commit()

    yield factory
    await engine.dispose()


async def _failing_record(db, **fields):
    db.add(UserNotification(**fields))
    await db.flush()
    raise OperationalError('INSERT INTO user_notifications', {}, Exception('disk I/O error'))


async def _notification_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(UserNotification))


async def test_failed_record_write_does_not_break_committed_mutations(monkeypatch, session_factory):
    monkeypatch.setattr(notification_service, 'create_user_notification', _failing_record)
    notifier = NotificationService(registry=LivePushRegistry(), session_factory=session_factory)

    async with session_factory() as db:
        controller = FileLifecycleController(db, notifier)

        result = await controller.set_status(FILE_ID, 'PENDING', ADMIN, estimated_minutes=15)

        assert result.changed is True
        assert result.file.status == 'PENDING'
        assert result.file.estimated_processing_time == 15
        assert result.file.estimated_processing_time_set_at is not None
        assert all(not report.delivered(CHANNEL_RECORD) for report in result.reports)
        assert {report.user_id for report in result.reports} == {'customer-1', 'admin-2'}

        notes = await controller.set_admin_notes(FILE_ID, 'Please send the full read', ADMIN)

        assert notes.file.admin_notes == 'Please send the full read'
        assert notes.file.original_filename == 'golf7_stage1.bin'

    async with session_factory() as check:
        stored = await check.get(TuningFile, FILE_ID)
        assert stored.status == 'PENDING'
        assert stored.estimated_processing_time == 15
        assert stored.admin_notes == 'Please send the full read'
    assert await _notification_count(session_factory) == 0


async def test_record_is_written_in_its_own_transaction(session_factory):
    notifier = NotificationService(registry=LivePushRegistry(), session_factory=session_factory)

    async with session_factory() as db:
        result = await FileLifecycleController(db, notifier).set_price(FILE_ID, '2500', ADMIN)

        assert result.file.price == Decimal('2500.00')
        assert result.reports[0].delivered(CHANNEL_RECORD)

    async with session_factory() as check:
        rows = (await check.execute(select(UserNotification))).scalars().all()
    assert [(row.user_id, row.notification_type) for row in rows] == [('customer-1', 'PRICE_SET')]
