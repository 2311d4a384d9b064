import json
from datetime import UTC, datetime, timedelta

import pytest

from tunedesk.services.live_push import (
    CLIENT_DEFAULT,
    CLIENT_FIREFOX,
    LivePushRegistry,
    PushStream,
    detect_client_class,
    encode_frame,
)


async def _drain(stream: PushStream) -> list[str]:
    stream.close()
    return [frame async for frame in stream.frames(idle_timeout=0.05)]


def _decode(frame: str) -> dict:
    assert frame.startswith('data: ')
    assert frame.endswith('\n\n')
    return json.loads(frame[len('data: ') : -2])


def test_encode_frame_is_sse_data_line():
    assert encode_frame({'type': 'connection'}) == 'data: {"type": "connection"}\n\n'


@pytest.mark.parametrize(
    ('user_agent', 'expected'),
    [
        ('Mozilla/5.0 (X11; Linux x86_64; rv:131.0) Gecko/20100101 Firefox/131.0', CLIENT_FIREFOX),
        ('Mozilla/5.0 (Macintosh) AppleWebKit/605.1.15 Safari/605.1.15', CLIENT_DEFAULT),
        (None, CLIENT_DEFAULT),
    ],
)
def test_detect_client_class(user_agent, expected):
    assert detect_client_class(user_agent) == expected


async def test_push_adds_timestamp():
    registry = LivePushRegistry()
    stream = PushStream()
    await registry.register('user-1', stream)

    assert await registry.push('user-1', {'type': 'file_status_update', 'fileId': 'f-1'}) is True

    [frame] = await _drain(stream)
    payload = _decode(frame)
    assert payload['type'] == 'file_status_update'
    assert payload['fileId'] == 'f-1'
    assert 'timestamp' in payload


async def test_push_without_connection_is_not_delivered():
    assert await LivePushRegistry().push('nobody', {'type': 'notification'}) is False


async def test_register_replaces_and_closes_previous_stream():
    registry = LivePushRegistry()
    first, second = PushStream(), PushStream()
    await registry.register('user-1', first)
    await registry.register('user-1', second)

    assert first.closed is True
    assert registry.get('user-1').stream is second
    assert registry.connection_count == 1


async def test_stale_stream_cannot_evict_its_replacement():
    registry = LivePushRegistry()
    first, second = PushStream(), PushStream()
    await registry.register('user-1', first)
    await registry.register('user-1', second)

    assert await registry.unregister('user-1', first) is False
    assert registry.is_connected('user-1')
    assert await registry.unregister('user-1', second) is True
    assert not registry.is_connected('user-1')


async def test_failed_write_drops_connection():
    registry = LivePushRegistry()
    stream = PushStream(maxsize=1)
    await registry.register('user-1', stream)

    assert await registry.push('user-1', {'type': 'a'}) is True
    assert await registry.push('user-1', {'type': 'b'}) is False
    assert not registry.is_connected('user-1')
    assert stream.closed is True


async def test_sweep_removes_only_idle_connections():
    registry = LivePushRegistry(stale_after=timedelta(minutes=5))
    idle, active = PushStream(), PushStream()
    await registry.register('idle', idle)
    await registry.register('active', active)
    registry.get('idle').last_activity = datetime.now(UTC) - timedelta(minutes=6)

    removed = await registry.sweep()

    assert removed == 1
    assert not registry.is_connected('idle')
    assert registry.is_connected('active')
    assert idle.closed is True


async def test_heartbeats_only_for_firefox_clients():
    registry = LivePushRegistry()
    firefox, chrome = PushStream(), PushStream()
    await registry.register('ff', firefox, CLIENT_FIREFOX)
    await registry.register('chrome', chrome, CLIENT_DEFAULT)

    assert await registry.send_heartbeats() == 1

    assert [_decode(f)['type'] for f in await _drain(firefox)] == ['heartbeat']
    assert await _drain(chrome) == []


async def test_push_all_counts_deliveries():
    registry = LivePushRegistry()
    for user_id in ('a', 'b', 'c'):
        await registry.register(user_id, PushStream())

    assert await registry.push_all({'type': 'announcement'}) == 3


async def test_idle_stream_yields_tick():
    stream = PushStream()
    frames = stream.frames(idle_timeout=0.01)

    assert await frames.__anext__() is None
    stream.write('data: {}\n\n')
    assert await frames.__anext__() == 'data: {}\n\n'
    await frames.aclose()
