"""Shared pytest fixtures and in-memory doubles for all tests."""

import asyncio
import inspect
import itertools
from typing import Any, Dict, List, Optional, Tuple

import pytest

from peershare.errors import ChannelError
from peershare.session.coordinator import MessageBus, RendezvousCoordinator
from peershare.session.registry import SessionRegistry
from peershare.transfer.protocol import DirectChannel, TransferMessage, TransferMessageType


class MemoryChannel(DirectChannel):
    """
    In-memory DirectChannel.

    `credits` limits how many times `ready()` returns before blocking;
    `release()` hands out more. `fail_on_send` makes the n-th send (0-based)
    raise ChannelError.
    """

    def __init__(self, peer_id: Optional[str] = None, credits: Optional[int] = None,
                 fail_on_send: Optional[int] = None):
        self.peer_id = peer_id
        self.peer: Optional['MemoryChannel'] = None
        self.sent: List[TransferMessage] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.fail_on_send = fail_on_send
        self._credits = asyncio.Semaphore(credits) if credits is not None else None
        self._closed = False
        self._sends = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def release(self, n: int = 1):
        for _ in range(n):
            self._credits.release()

    async def ready(self):
        if self._closed:
            raise ChannelError("Connection closed")
        if self._credits is not None:
            await self._credits.acquire()

    async def send(self, message: TransferMessage):
        if self._closed:
            raise ChannelError("Connection closed")
        attempt = self._sends
        self._sends += 1
        if self.fail_on_send is not None and attempt == self.fail_on_send:
            raise ChannelError("Simulated send failure")
        self.sent.append(message)
        if self.peer is not None and not self.peer.closed:
            self.peer.inbox.put_nowait(message)

    async def receive(self) -> Optional[TransferMessage]:
        if self._closed and self.inbox.empty():
            return None
        return await self.inbox.get()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.inbox.put_nowait(None)
        if self.peer is not None and not self.peer.closed:
            self.peer.inbox.put_nowait(None)

    def feed(self, *messages: TransferMessage):
        for message in messages:
            self.inbox.put_nowait(message)

    def sent_of(self, message_type: TransferMessageType) -> List[TransferMessage]:
        return [m for m in self.sent if m.type == message_type]


def memory_pair() -> Tuple[MemoryChannel, MemoryChannel]:
    """Two linked channels: what one sends the other receives."""
    a, b = MemoryChannel(), MemoryChannel()
    a.peer, b.peer = b, a
    return a, b


class RecordingBus(MessageBus):
    """Message bus that records every notification."""

    def __init__(self, offline=()):
        self.messages: List[Tuple[str, str, Dict[str, Any]]] = []
        self.offline = set(offline)

    async def send(self, connection_id, event, payload):
        if connection_id in self.offline:
            return False
        self.messages.append((connection_id, event, payload))
        return True

    def events_for(self, connection_id: str, event: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            payload for target, name, payload in self.messages
            if target == connection_id and (event is None or name == event)
        ]


class LocalHub(MessageBus):
    """A coordination service without the network, for participant tests."""

    def __init__(self, registry: Optional[SessionRegistry] = None):
        self.registry = registry or SessionRegistry()
        self.coordinator = RendezvousCoordinator(self.registry, self)
        self.clients: Dict[str, 'LocalSignaling'] = {}
        self._ids = itertools.count(1)

    def connect(self) -> 'LocalSignaling':
        client = LocalSignaling(self, f"conn-{next(self._ids)}")
        self.clients[client.connection_id] = client
        return client

    async def send(self, connection_id, event, payload):
        client = self.clients.get(connection_id)
        if client is None:
            return False
        client.deliver(event, payload)
        return True


class LocalSignaling:
    """Stand-in for SignalingClient that talks to a LocalHub directly."""

    def __init__(self, hub: LocalHub, connection_id: str):
        self.hub = hub
        self.connection_id = connection_id
        self.received: List[Tuple[str, Dict[str, Any]]] = []
        self._handlers: Dict[str, list] = {}
        self._tasks = set()
        self._open = True

    @property
    def connected(self) -> bool:
        return self._open

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    async def request(self, event, data=None):
        return await self.hub.coordinator.handle(self.connection_id, event, data or {})

    async def emit(self, event, data=None):
        await self.hub.coordinator.handle(self.connection_id, event, data or {})

    def deliver(self, event, data):
        self.received.append((event, data))
        for handler in self._handlers.get(event, []):
            result = handler(data)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def close(self):
        if not self._open:
            return
        self._open = False
        self.hub.clients.pop(self.connection_id, None)
        await self.hub.coordinator.disconnect(self.connection_id)


@pytest.fixture
def registry():
    """Registry with predictable share ids."""
    counter = itertools.count(1)
    return SessionRegistry(id_factory=lambda: f"share-{next(counter)}")


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def coordinator(registry, bus):
    return RendezvousCoordinator(registry, bus)
