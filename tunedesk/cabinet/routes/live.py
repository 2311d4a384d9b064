from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from tunedesk.config import settings
from tunedesk.database.models import User
from tunedesk.services.live_push import LivePushRegistry, PushStream, detect_client_class, encode_frame

from ..dependencies import get_current_cabinet_user, get_push_registry


logger = structlog.get_logger(__name__)

router = APIRouter(tags=['Cabinet Live Push'])

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


async def stream_events(
    request: Request,
    registry: LivePushRegistry,
    user_id: str,
    stream: PushStream,
) -> AsyncIterator[str]:
    try:
        yield encode_frame({'type': 'connection', 'status': 'connected', 'userId': user_id})
        async for frame in stream.frames(idle_timeout=registry.heartbeat_interval):
            if await request.is_disconnected():
                break
            if frame is None:
                # Idle tick; the client is still attached
                await registry.touch(user_id, stream)
                continue
            yield frame
    finally:
        await registry.unregister(user_id, stream)


@router.get('/sse')
async def live_events(
    request: Request,
    user: User = Depends(get_current_cabinet_user),
    registry: LivePushRegistry = Depends(get_push_registry),
):
    client_class = detect_client_class(request.headers.get('user-agent'))
    stream = PushStream(maxsize=settings.PUSH_QUEUE_SIZE)
    await registry.register(user.id, stream, client_class)
    logger.info('Live push connection opened', user_id=user.id, client_class=client_class)

    return StreamingResponse(
        stream_events(request, registry, user.id, stream),
        media_type='text/event-stream',
        headers=SSE_HEADERS,
    )
