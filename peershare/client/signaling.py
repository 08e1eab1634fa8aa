"""
Coordination Client

WebSocket client for the coordination service, used by both owners and
receivers. Requests are matched to replies by an `ack` counter;
everything else the server pushes is dispatched to registered handlers.
"""

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp

from ..session.models import ACK, CONNECTED

logger = logging.getLogger(__name__)

# Handler for a server notification; may be a coroutine function
NotificationHandler = Callable[[Dict[str, Any]], Any]

# Pseudo-event dispatched when the socket closes
DISCONNECTED = "disconnected"


def to_websocket_url(server_url: str) -> str:
    """http(s)://host:port -> ws(s)://host:port/ws"""
    url = server_url.rstrip('/')
    if url.startswith('https://'):
        url = 'wss://' + url[len('https://'):]
    elif url.startswith('http://'):
        url = 'ws://' + url[len('http://'):]
    if not url.endswith('/ws'):
        url += '/ws'
    return url


class SignalingClient:
    """
    A participant's connection to the coordination service.
    """

    def __init__(self, server_url: str, timeout: float = 10.0):
        self.url = to_websocket_url(server_url)
        self.timeout = timeout
        self.connection_id: Optional[str] = None

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[NotificationHandler]] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._acks = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def on(self, event: str, handler: NotificationHandler):
        """Register a handler for a server notification."""
        self._handlers.setdefault(event, []).append(handler)

    async def connect(self):
        """Open the socket and wait for the server greeting."""
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url),
                timeout=self.timeout,
            )
            greeting = await self._ws.receive_json(timeout=self.timeout)
        except Exception:
            await self._session.close()
            raise

        if greeting.get('event') != CONNECTED:
            await self.close()
            raise ConnectionError(f"Unexpected greeting: {greeting}")

        self.connection_id = greeting['data']['connection_id']
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to {self.url} as {self.connection_id}")

    async def request(self, event: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send an event and wait for its reply.

        Raises:
            ConnectionError: If the socket closes before the reply
            asyncio.TimeoutError: If no reply arrives in time
        """
        if not self.connected:
            raise ConnectionError("Not connected")

        ack = next(self._acks)
        future = asyncio.get_running_loop().create_future()
        self._pending[ack] = future
        try:
            await self._ws.send_json({'event': event, 'data': data or {}, 'ack': ack})
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(ack, None)

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None):
        """Send a fire-and-forget event."""
        if not self.connected:
            raise ConnectionError("Not connected")
        await self._ws.send_json({'event': event, 'data': data or {}})

    async def close(self):
        """Close the socket and the HTTP session."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _read_loop(self):
        try:
            async for message in self._ws:
                if message.type != aiohttp.WSMsgType.TEXT:
                    if message.type == aiohttp.WSMsgType.ERROR:
                        logger.error(f"Coordination socket error: {self._ws.exception()}")
                    continue

                try:
                    frame = json.loads(message.data)
                except ValueError:
                    logger.warning("Ignoring malformed frame from server")
                    continue

                if frame.get('event') == ACK:
                    future = self._pending.get(frame.get('ack'))
                    if future is not None and not future.done():
                        future.set_result(frame.get('data') or {})
                    continue

                self._dispatch(frame.get('event'), frame.get('data') or {})
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Coordination connection closed"))
            logger.info("Disconnected from coordination service")
            self._dispatch(DISCONNECTED, {})

    def _dispatch(self, event: str, data: Dict[str, Any]):
        for handler in self._handlers.get(event, []):
            try:
                result = handler(data)
            except Exception as e:
                logger.error(f"Handler for {event} failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification handler failed: {task.exception()}")
