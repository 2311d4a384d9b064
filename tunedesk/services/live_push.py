"""In-process registry of live server-sent-event streams.

The registry is owned by the application (created in the lifespan and handed to
whoever needs it); nothing here is persisted. A process restart drops every
stream and clients simply reconnect.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog


logger = structlog.get_logger(__name__)

CLIENT_DEFAULT = 'default'
CLIENT_FIREFOX = 'firefox'

HEARTBEAT_CLIENT_CLASSES = frozenset({CLIENT_FIREFOX})


def detect_client_class(user_agent: str | None) -> str:
    if user_agent and 'firefox' in user_agent.lower():
        return CLIENT_FIREFOX
    return CLIENT_DEFAULT


def _now_utc() -> datetime:
    return datetime.now(UTC)


def encode_frame(payload: dict[str, Any]) -> str:
    return f'data: {json.dumps(payload, default=str, ensure_ascii=False)}\n\n'


class StreamClosedError(RuntimeError):
    pass


class PushStream:
    """Write side of one SSE response, backed by a bounded queue.

    A client that stops reading fills the queue; the next write then fails and
    the registry drops the connection.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, frame: str) -> None:
        if self.closed:
            raise StreamClosedError('stream is closed')
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def frames(self, idle_timeout: float) -> AsyncIterator[str | None]:
        """Yield queued frames; yields ``None`` after ``idle_timeout`` seconds of silence."""
        while True:
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
            except TimeoutError:
                if self.closed:
                    return
                yield None
                continue
            if frame is None:
                return
            yield frame


@dataclass
class PushConnection:
    user_id: str
    stream: PushStream
    client_class: str = CLIENT_DEFAULT
    connected_at: datetime = field(default_factory=_now_utc)
    last_activity: datetime = field(default_factory=_now_utc)


class LivePushRegistry:
    def __init__(
        self,
        *,
        stale_after: timedelta = timedelta(minutes=5),
        heartbeat_interval: float = 30.0,
        sweep_interval: float = 60.0,
    ):
        self.stale_after = stale_after
        self.heartbeat_interval = heartbeat_interval
        self.sweep_interval = sweep_interval
        self._connections: dict[str, PushConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def get(self, user_id: str) -> PushConnection | None:
        return self._connections.get(user_id)

    async def register(self, user_id: str, stream: PushStream, client_class: str = CLIENT_DEFAULT) -> PushConnection:
        async with self._lock_for(user_id):
            previous = self._connections.get(user_id)
            if previous is not None and previous.stream is not stream:
                previous.stream.close()
                logger.info('Replaced live push connection', user_id=user_id, client_class=client_class)
            connection = PushConnection(user_id=user_id, stream=stream, client_class=client_class)
            self._connections[user_id] = connection
        return connection

    async def unregister(self, user_id: str, stream: PushStream) -> bool:
        """Drop the user's connection only if it is still ``stream``; a replaced stream cannot evict its successor."""
        async with self._lock_for(user_id):
            current = self._connections.get(user_id)
            stream.close()
            if current is None or current.stream is not stream:
                return False
            del self._connections[user_id]
        logger.info('Live push connection closed', user_id=user_id)
        return True

    async def touch(self, user_id: str, stream: PushStream) -> None:
        async with self._lock_for(user_id):
            current = self._connections.get(user_id)
            if current is not None and current.stream is stream:
                current.last_activity = _now_utc()

    async def push(self, user_id: str, payload: dict[str, Any]) -> bool:
        message = {**payload, 'timestamp': _now_utc().isoformat()}
        async with self._lock_for(user_id):
            connection = self._connections.get(user_id)
            if connection is None:
                return False
            try:
                connection.stream.write(encode_frame(message))
            except (StreamClosedError, asyncio.QueueFull) as exc:
                del self._connections[user_id]
                connection.stream.close()
                logger.warning(
                    'Dropped live push connection after failed write',
                    user_id=user_id,
                    event_type=payload.get('type'),
                    exc=repr(exc),
                )
                return False
            connection.last_activity = _now_utc()
        return True

    async def push_all(self, payload: dict[str, Any]) -> int:
        delivered = 0
        for user_id in list(self._connections):
            if await self.push(user_id, payload):
                delivered += 1
        return delivered

    async def send_heartbeats(self) -> int:
        sent = 0
        for user_id, connection in list(self._connections.items()):
            if connection.client_class not in HEARTBEAT_CLIENT_CLASSES:
                continue
            if await self.push(user_id, {'type': 'heartbeat'}):
                sent += 1
        return sent

    async def sweep(self, now: datetime | None = None) -> int:
        current = now or _now_utc()
        removed = 0
        for user_id, connection in list(self._connections.items()):
            if current - connection.last_activity <= self.stale_after:
                continue
            async with self._lock_for(user_id):
                latest = self._connections.get(user_id)
                if latest is not connection or current - latest.last_activity <= self.stale_after:
                    continue
                del self._connections[user_id]
                connection.stream.close()
                removed += 1
        for user_id in list(self._locks):
            lock = self._locks[user_id]
            if user_id not in self._connections and not lock.locked():
                del self._locks[user_id]
        if removed:
            logger.info('Swept stale live push connections', removed=removed, remaining=len(self._connections))
        return removed

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error('Live push sweep failed', exc=exc)

    async def run_heartbeats(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send_heartbeats()
            except Exception as exc:
                logger.error('Live push heartbeat failed', exc=exc)

    async def close_all(self) -> None:
        for user_id, connection in list(self._connections.items()):
            connection.stream.close()
            self._connections.pop(user_id, None)
