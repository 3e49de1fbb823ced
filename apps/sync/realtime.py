#!/usr/bin/env python3
# apps/sync/realtime.py

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class RealtimeMessage:
    topic: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ref: Optional[str] = None


class RealtimeTransport:
    """
    Websocket connection to the backend's realtime service.

    Speaks the Phoenix channel framing: JSON objects with ``topic``,
    ``event``, ``payload`` and ``ref``. One transport carries every channel
    the session joins; it is single-use, a lost connection means building a
    new transport.
    """

    def __init__(self, url: str, access_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 heartbeat: Optional[float] = None):
        self.url = url
        self.access_token = access_token
        self.heartbeat = heartbeat or settings.REALTIME_HEARTBEAT
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._refs = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        logger.info("Opening realtime connection")
        self._ws = await self._session.ws_connect(self.url, autoping=True)
        self._heartbeat_task = asyncio.ensure_future(self._send_heartbeats())

    async def _send_heartbeats(self):
        while self.connected:
            await asyncio.sleep(self.heartbeat)
            try:
                await self.send('phoenix', 'heartbeat', {})
            except (ConnectionError, aiohttp.ClientError) as e:
                logger.warning(f"Realtime heartbeat failed: {str(e)}")
                return

    async def send(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        if not self.connected:
            raise ConnectionError("Realtime transport is not connected")
        ref = str(next(self._refs))
        await self._ws.send_str(json.dumps({
            'topic': topic,
            'event': event,
            'payload': payload,
            'ref': ref,
        }))
        return ref

    async def join(self, topic: str, config: Dict[str, Any]) -> str:
        payload = {'config': config}
        if self.access_token:
            payload['access_token'] = self.access_token
        logger.debug(f"Joining realtime channel {topic}")
        return await self.send(topic, 'phx_join', payload)

    async def track(self, topic: str, meta: Dict[str, Any]) -> str:
        return await self.send(topic, 'presence', {
            'type': 'presence',
            'event': 'track',
            'payload': meta,
        })

    async def broadcast(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        return await self.send(topic, 'broadcast', {
            'type': 'broadcast',
            'event': event,
            'payload': payload,
        })

    async def messages(self) -> AsyncIterator[RealtimeMessage]:
        """
        Yield decoded frames until the socket goes away.

        Raises:
            ConnectionError: the socket closed or errored
        """
        if self._ws is None:
            raise ConnectionError("Realtime transport is not connected")
        async for frame in self._ws:
            if frame.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(frame.data)
                except json.JSONDecodeError:
                    logger.warning(f"Discarding malformed realtime frame: {frame.data[:200]!r}")
                    continue
                if not isinstance(data, dict):
                    continue
                yield RealtimeMessage(
                    topic=data.get('topic', ''),
                    event=data.get('event', ''),
                    payload=data.get('payload') or {},
                    ref=data.get('ref'),
                )
            elif frame.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"Realtime socket error: {self._ws.exception()}")
        raise ConnectionError("Realtime socket closed")

    async def close(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
