import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots.gateway import TelegramGateway
from tunedesk.bots.identities import load_identities
from tunedesk.bots.webhook_router import WebhookRouter
from tunedesk.cabinet.routes import admin_files, files, live, notifications, telegram_webhooks
from tunedesk.config import Settings, settings as default_settings
from tunedesk.logging_config import configure_logging
from tunedesk.services.email_service import EmailSender
from tunedesk.services.file_lifecycle_service import FileLifecycleController
from tunedesk.services.live_push import LivePushRegistry
from tunedesk.services.notification_service import NotificationService


logger = structlog.get_logger(__name__)


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    registry: LivePushRegistry = app.state.push_registry
    gateway: TelegramGateway = app.state.telegram_gateway

    sweeper = asyncio.create_task(registry.run_sweeper())
    heartbeats = asyncio.create_task(registry.run_heartbeats())

    if cfg.TELEGRAM_REGISTER_WEBHOOKS:
        results = await gateway.register_webhooks(cfg.PUBLIC_BASE_URL)
        for role, result in results.items():
            if not result.ok and not result.skipped:
                logger.error('Webhook registration failed', bot=role.value, detail=result.detail)

    logger.info(
        'Service started',
        bots=[role.value for role, identity in gateway.identities.items() if identity.is_configured],
        email_enabled=cfg.EMAIL_ENABLED,
    )

    yield

    await _cancel(sweeper)
    await _cancel(heartbeats)
    await registry.close_all()
    await gateway.close()
    logger.info('Service stopped')


def create_app(
    config: Settings | None = None,
    *,
    gateway: TelegramGateway | None = None,
    registry: LivePushRegistry | None = None,
    email_sender: EmailSender | None = None,
) -> FastAPI:
    cfg = config or default_settings
    configure_logging(cfg.LOG_LEVEL, cfg.LOG_FORMAT)

    registry = registry or LivePushRegistry(
        stale_after=timedelta(seconds=cfg.PUSH_STALE_AFTER_SECONDS),
        heartbeat_interval=cfg.PUSH_HEARTBEAT_INTERVAL_SECONDS,
        sweep_interval=cfg.PUSH_SWEEP_INTERVAL_SECONDS,
    )
    gateway = gateway or TelegramGateway(load_identities(cfg))
    email_sender = email_sender or EmailSender(cfg)
    notifier = NotificationService(registry=registry, gateway=gateway, email_sender=email_sender)

    def controller_factory(db: AsyncSession) -> FileLifecycleController:
        return FileLifecycleController(db, notifier)

    app = FastAPI(title='tunedesk', lifespan=lifespan)
    app.state.settings = cfg
    app.state.push_registry = registry
    app.state.telegram_gateway = gateway
    app.state.notification_service = notifier
    app.state.webhook_routers = {
        role: WebhookRouter(identity, gateway, controller_factory) for role, identity in gateway.identities.items()
    }

    for module in (telegram_webhooks, live, files, admin_files, notifications):
        app.include_router(module.router, prefix='/api')
    return app


app = create_app()
