"""Tests for direct-channel framing and the TCP listener."""

import asyncio
import struct

import pytest

from peershare.errors import ChannelError
from peershare.transfer.protocol import (
    MAX_MESSAGE_SIZE,
    ChannelListener,
    TransferMessage,
    TransferMessageType,
    connect_channel,
    parse_rendezvous_id,
)


def reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def test_chunk_frame_survives_the_wire():
    message = TransferMessage.chunk(3, 10, b'\x00\xffbinary\n')

    decoded = await TransferMessage.from_reader(reader_with(message.to_bytes()))

    assert decoded.type == TransferMessageType.CHUNK
    assert decoded.headers == {'index': 3, 'total': 10}
    assert decoded.data == b'\x00\xffbinary\n'


def test_frame_layout():
    frame = TransferMessage.complete().to_bytes()
    total_length, header_length = struct.unpack('>II', frame[:8])
    assert total_length == len(frame) - 4
    assert header_length == total_length
    assert frame[8:].startswith(b'{"type": "complete"')


async def test_eof_reads_as_none():
    assert await TransferMessage.from_reader(reader_with(b'')) is None
    assert await TransferMessage.from_reader(reader_with(b'\x00\x00')) is None


async def test_oversized_frame_is_rejected():
    frame = struct.pack('>I', MAX_MESSAGE_SIZE + 1) + b'\x00' * 8
    assert await TransferMessage.from_reader(reader_with(frame)) is None


async def test_unknown_message_type_is_rejected():
    header = b'{"type": "teleport", "data_length": 0}'
    frame = struct.pack('>II', len(header), len(header)) + header
    assert await TransferMessage.from_reader(reader_with(frame)) is None


def test_parse_rendezvous_id():
    assert parse_rendezvous_id("127.0.0.1:9000") == ("127.0.0.1", 9000)
    assert parse_rendezvous_id("::1:9000") == ("::1", 9000)
    with pytest.raises(ValueError):
        parse_rendezvous_id("owner-abc")
    with pytest.raises(ValueError):
        parse_rendezvous_id("host:port")


async def test_listener_accepts_hello_and_delivers_messages():
    received = asyncio.Queue()

    async def handler(channel):
        while True:
            message = await channel.receive()
            await received.put((channel.peer_id, message))
            if message is None or message.type == TransferMessageType.COMPLETE:
                break

    listener = ChannelListener(handler)
    await listener.start()
    try:
        assert listener.port != 0
        channel = await connect_channel(listener.rendezvous_id, "owner-abc")
        assert channel is not None

        await channel.send(TransferMessage.metadata({'name': 'a.txt', 'size': 5}))
        await channel.ready()
        await channel.send(TransferMessage.chunk(0, 1, b'hello'))
        await channel.send(TransferMessage.complete())

        messages = [await asyncio.wait_for(received.get(), 5) for _ in range(3)]
        await channel.wait_closed()
    finally:
        await listener.stop()

    assert {peer for peer, _ in messages} == {"owner-abc"}
    assert [m.type for _, m in messages] == [
        TransferMessageType.METADATA,
        TransferMessageType.CHUNK,
        TransferMessageType.COMPLETE,
    ]
    assert messages[0][1].headers['data'] == {'name': 'a.txt', 'size': 5}
    assert messages[1][1].data == b'hello'
    assert listener.channels_accepted == 1


async def test_listener_rejects_connection_without_hello():
    called = []

    async def handler(channel):
        called.append(channel)

    listener = ChannelListener(handler)
    await listener.start()
    try:
        reader, writer = await asyncio.open_connection(listener.host, listener.port)
        writer.write(TransferMessage.complete().to_bytes())
        await writer.drain()
        assert await asyncio.wait_for(reader.read(), 5) == b''
        writer.close()
    finally:
        await listener.stop()

    assert called == []
    assert listener.channels_rejected == 1


async def test_connect_to_closed_port_returns_none():
    listener = ChannelListener(lambda channel: None)
    await listener.start()
    rendezvous_id = listener.rendezvous_id
    await listener.stop()

    assert await connect_channel(rendezvous_id, "owner-abc", timeout=2) is None


async def test_connect_to_invalid_id_returns_none():
    assert await connect_channel("not-a-rendezvous-id", "owner-abc") is None


async def test_send_after_close_raises_channel_error():
    async def handler(channel):
        await channel.receive()

    listener = ChannelListener(handler)
    await listener.start()
    try:
        channel = await connect_channel(listener.rendezvous_id, "owner-abc")
        channel.close()
        assert channel.closed
        with pytest.raises(ChannelError):
            await channel.send(TransferMessage.complete())
        with pytest.raises(ChannelError):
            await channel.ready()
        assert await channel.receive() is None
    finally:
        await listener.stop()
