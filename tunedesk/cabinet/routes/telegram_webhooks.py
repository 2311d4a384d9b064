import hmac

import structlog
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tunedesk.bots.identities import BotRole
from tunedesk.bots.webhook_router import WebhookRouter

from ..dependencies import get_cabinet_db


logger = structlog.get_logger(__name__)

router = APIRouter(prefix='/telegram', tags=['Telegram Webhooks'])

OK = {'ok': True}


def _secret_matches(expected: str, received: str | None) -> bool:
    if not expected:
        return True
    return received is not None and hmac.compare_digest(expected, received)


async def _dispatch(role: BotRole, request: Request, db: AsyncSession, secret: str | None) -> dict:
    routers: dict[BotRole, WebhookRouter] = request.app.state.webhook_routers
    bot_router = routers[role]

    if not bot_router.identity.is_configured:
        logger.info('Update for disabled bot ignored', bot=role.value)
        return OK
    if not _secret_matches(bot_router.identity.webhook_secret, secret):
        logger.warning('Webhook secret mismatch', bot=role.value)
        return OK

    try:
        raw = await request.json()
    except ValueError as exc:
        logger.warning('Webhook body is not JSON', bot=role.value, exc=exc)
        return OK
    if not isinstance(raw, dict):
        logger.warning('Webhook body is not an object', bot=role.value)
        return OK

    try:
        await bot_router.handle_update(db, raw)
    except Exception as exc:
        # Acknowledged regardless; the failed update is logged and dropped
        await db.rollback()
        logger.exception('Webhook update handling failed', bot=role.value, update_id=raw.get('update_id'), exc=exc)
    return OK


@router.post('/super-admin')
async def super_admin_webhook(
    request: Request,
    db: AsyncSession = Depends(get_cabinet_db),
    secret: str | None = Header(default=None, alias='X-Telegram-Bot-Api-Secret-Token'),
):
    return await _dispatch(BotRole.SUPER_ADMIN, request, db, secret)


@router.post('/file-admin')
async def file_admin_webhook(
    request: Request,
    db: AsyncSession = Depends(get_cabinet_db),
    secret: str | None = Header(default=None, alias='X-Telegram-Bot-Api-Secret-Token'),
):
    return await _dispatch(BotRole.FILE_ADMIN, request, db, secret)


@router.post('/customer')
async def customer_webhook(
    request: Request,
    db: AsyncSession = Depends(get_cabinet_db),
    secret: str | None = Header(default=None, alias='X-Telegram-Bot-Api-Secret-Token'),
):
    return await _dispatch(BotRole.CUSTOMER, request, db, secret)
