"""
Direct Channel Protocol

Design Decision: Direct Channel Transport
=========================================

Options Considered:
1. WebRTC data channels
   - NAT traversal built in
   - Heavy native dependency, out of scope for the core

2. Raw TCP with custom framing
   - Lightweight, full control
   - Need to handle framing ourselves

3. WebSocket between peers
   - Bidirectional, framed
   - Needs an HTTP server on every receiver

Decision: Custom TCP Protocol with Length-Prefixed Messages
- Simple 4-byte length prefix + JSON header + binary data
- Reliable and ordered, which is all the transfer protocol assumes
- Any other reliable ordered transport can implement DirectChannel

Message Format:
```
+----------------+----------------+----------------+----------------+
| Length (4B)    | Hdr length (4B)| Header (JSON)  | Data (binary)  |
+----------------+----------------+----------------+----------------+

Header JSON:
{
    "type": "hello" | "metadata" | "chunk" | "complete" | "error",
    "data_length": 12345,
    ...
}
```

Application messages, in order: one `metadata`, zero or more `chunk`
(`index`, `total` in the header, slice bytes as data), one `complete`.
`hello` is a transport handshake sent by the dialing side before any
application message; it carries the dialer's rendezvous id.
"""

import asyncio
import json
import struct
import logging
from enum import Enum
from typing import Optional, Tuple, Callable, Awaitable, Dict, Any
from dataclasses import dataclass, field

from ..errors import ChannelError

logger = logging.getLogger(__name__)

# Largest frame accepted from a peer
MAX_MESSAGE_SIZE = 100 * 1024 * 1024  # 100MB


class TransferMessageType(Enum):
    """Direct-channel message types."""
    # Handshake
    HELLO = "hello"

    # Application
    METADATA = "metadata"
    CHUNK = "chunk"
    COMPLETE = "complete"

    # Control
    ERROR = "error"


@dataclass
class TransferMessage:
    """A direct-channel message."""
    type: TransferMessageType
    headers: Dict[str, Any] = field(default_factory=dict)
    data: bytes = b''

    # === Constructors ===

    @classmethod
    def hello(cls, rendezvous_id: str) -> 'TransferMessage':
        return cls(TransferMessageType.HELLO, {'rendezvous_id': rendezvous_id})

    @classmethod
    def metadata(cls, metadata: Dict[str, Any]) -> 'TransferMessage':
        return cls(TransferMessageType.METADATA, {'data': metadata})

    @classmethod
    def chunk(cls, index: int, total: int, data: bytes) -> 'TransferMessage':
        return cls(TransferMessageType.CHUNK, {'index': index, 'total': total}, data)

    @classmethod
    def complete(cls) -> 'TransferMessage':
        return cls(TransferMessageType.COMPLETE)

    @classmethod
    def error(cls, code: str, message: str) -> 'TransferMessage':
        return cls(TransferMessageType.ERROR, {'code': code, 'message': message})

    # === Wire format ===

    def to_bytes(self) -> bytes:
        """Serialize message to bytes."""
        header_dict = {
            'type': self.type.value,
            'data_length': len(self.data),
            **self.headers
        }
        header_bytes = json.dumps(header_dict).encode('utf-8')

        # Calculate total length (header + data)
        total_length = len(header_bytes) + len(self.data)

        # Pack: length (4 bytes) + header_length (4 bytes) + header + data
        return (
            struct.pack('>I', total_length) +
            struct.pack('>I', len(header_bytes)) +
            header_bytes +
            self.data
        )

    @classmethod
    async def from_reader(cls, reader: asyncio.StreamReader) -> Optional['TransferMessage']:
        """Read a message from a stream; None on EOF or a malformed frame."""
        try:
            length_bytes = await reader.readexactly(4)
            total_length = struct.unpack('>I', length_bytes)[0]

            if total_length > MAX_MESSAGE_SIZE:
                raise ValueError(f"Message too large: {total_length}")

            header_length_bytes = await reader.readexactly(4)
            header_length = struct.unpack('>I', header_length_bytes)[0]
            if header_length > total_length:
                raise ValueError(f"Header length {header_length} exceeds frame")

            header_bytes = await reader.readexactly(header_length)
            header_dict = json.loads(header_bytes.decode('utf-8'))

            data_length = total_length - header_length
            data = await reader.readexactly(data_length) if data_length > 0 else b''

            # Extract type and remaining headers
            msg_type = TransferMessageType(header_dict.pop('type'))
            header_dict.pop('data_length', None)

            return cls(type=msg_type, headers=header_dict, data=data)

        except (asyncio.IncompleteReadError, ConnectionError):
            return None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Error reading message: {e}")
            return None


class DirectChannel:
    """
    A reliable, ordered peer-to-peer message channel.

    Implementations must make `close()` idempotent and make `receive()`
    return None once the channel is closed.
    """

    peer_id: Optional[str] = None

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def ready(self):
        """Wait until the channel can take another message (pacing signal)."""
        raise NotImplementedError

    async def send(self, message: TransferMessage):
        """
        Send a message.

        Raises:
            ChannelError: If the channel is closed or the write fails
        """
        raise NotImplementedError

    async def receive(self) -> Optional[TransferMessage]:
        """Receive the next message, or None when the channel closes."""
        raise NotImplementedError

    def close(self):
        """Close the channel without waiting for buffers to flush."""
        raise NotImplementedError


class StreamChannel(DirectChannel):
    """
    DirectChannel over an asyncio TCP stream.

    Availability is signalled by the write buffer draining below the
    transport's high-water mark.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter, peer_id: Optional[str] = None):
        self.reader = reader
        self.writer = writer
        self.peer_id = peer_id
        self._closed = False
        # Serializes writes so frames never interleave
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    async def ready(self):
        if self.closed:
            raise ChannelError("Connection closed")
        try:
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise ChannelError(f"Channel failed: {e}") from e

    async def send(self, message: TransferMessage):
        if self.closed:
            raise ChannelError("Connection closed")

        async with self._lock:
            try:
                self.writer.write(message.to_bytes())
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                raise ChannelError(f"Send failed: {e}") from e

    async def receive(self) -> Optional[TransferMessage]:
        if self._closed:
            return None
        return await TransferMessage.from_reader(self.reader)

    def close(self):
        if not self._closed:
            self._closed = True
            self.writer.close()

    async def wait_closed(self):
        """Close and wait for the transport to shut down."""
        self.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


# Type for inbound channel handlers
ChannelHandler = Callable[[StreamChannel], Awaitable[None]]


def parse_rendezvous_id(rendezvous_id: str) -> Tuple[str, int]:
    """
    Split a `host:port` rendezvous id.

    Raises:
        ValueError: If the id is not host:port
    """
    host, sep, port = rendezvous_id.rpartition(':')
    if not sep or not host:
        raise ValueError(f"Invalid rendezvous id: {rendezvous_id!r}")
    return host, int(port)


class ChannelListener:
    """
    TCP listener that accepts direct channels.

    Each inbound connection must start with a `hello` frame; the handler
    receives the channel with `peer_id` set to the dialer's rendezvous id.
    """

    def __init__(self, handler: ChannelHandler, host: str = '127.0.0.1',
                 port: int = 0, handshake_timeout: float = 10.0):
        self.handler = handler
        self.host = host
        self.port = port
        self.handshake_timeout = handshake_timeout
        self.server: Optional[asyncio.AbstractServer] = None
        self._running = False

        # Statistics
        self.channels_accepted = 0
        self.channels_rejected = 0

    @property
    def rendezvous_id(self) -> str:
        """The id peers dial to reach this listener."""
        return f"{self.host}:{self.port}"

    async def start(self):
        """Start listening."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        # Resolve an ephemeral port
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Channel listener on {self.rendezvous_id}")

    async def stop(self):
        """Stop listening."""
        self._running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Channel listener stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        channel = StreamChannel(reader, writer)
        peer = channel.remote_address
        logger.debug(f"New direct channel from {peer}")

        try:
            hello = await asyncio.wait_for(channel.receive(), timeout=self.handshake_timeout)
            if hello is None or hello.type != TransferMessageType.HELLO:
                self.channels_rejected += 1
                logger.warning(f"Rejecting channel from {peer}: no hello")
                return

            channel.peer_id = hello.headers.get('rendezvous_id')
            self.channels_accepted += 1
            await self.handler(channel)

        except asyncio.TimeoutError:
            self.channels_rejected += 1
            logger.warning(f"Handshake timeout from {peer}")
        except Exception as e:
            logger.error(f"Error handling channel from {peer}: {e}")
        finally:
            await channel.wait_closed()
            logger.debug(f"Channel closed: {peer}")

    def get_stats(self) -> dict:
        return {
            'rendezvous_id': self.rendezvous_id,
            'channels_accepted': self.channels_accepted,
            'channels_rejected': self.channels_rejected,
        }


async def connect_channel(rendezvous_id: str, local_id: str,
                          timeout: float = 10.0) -> Optional[StreamChannel]:
    """
    Dial a peer's listener and identify ourselves.

    Returns:
        StreamChannel, or None if connection failed
    """
    try:
        host, port = parse_rendezvous_id(rendezvous_id)
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
        channel = StreamChannel(reader, writer, peer_id=rendezvous_id)
        await channel.send(TransferMessage.hello(local_id))
        return channel
    except (ValueError, OSError, ChannelError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to connect to {rendezvous_id}: {e}")
        return None
