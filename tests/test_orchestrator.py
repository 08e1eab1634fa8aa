"""Tests for owner-side transfer pacing and progress aggregation."""

import asyncio

from peershare.errors import ChannelError, ErrorCode, PartialTransferError
from peershare.session.models import FileMetadata
from peershare.session.state import SharePhase
from peershare.transfer.chunker import BytesPayload
from peershare.transfer.orchestrator import ProgressTracker, TransferOrchestrator, percent
from peershare.transfer.protocol import TransferMessage, TransferMessageType

from conftest import MemoryChannel


def make_payload(size: int) -> BytesPayload:
    return BytesPayload(bytes(i % 251 for i in range(size)), name="data.bin")


def make_orchestrator(channel, payload, chunk_size=100, **kwargs):
    metadata = FileMetadata(name=payload.name, size=payload.size)
    return TransferOrchestrator(
        receiver_id=kwargs.pop('receiver_id', 'receiver-1'),
        channel=channel,
        payload=payload,
        metadata=metadata,
        chunk_size=chunk_size,
        **kwargs,
    )


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def test_percent_rounds_half_up():
    assert percent(1, 2) == 50
    assert percent(1, 3) == 33
    assert percent(2, 3) == 67
    assert percent(1, 8) == 13
    assert percent(5, 0) == 0


def test_tracker_averages_active_receivers():
    changes = []
    tracker = ProgressTracker(on_change=lambda avg, n: changes.append((avg, n)))

    tracker.update("a", 100)
    tracker.update("b", 50)
    assert tracker.average == 75
    assert tracker.active_count == 2

    tracker.remove("a")
    assert tracker.average == 50
    assert tracker.active_count == 1

    tracker.remove("b")
    tracker.remove("b")
    assert tracker.average == 0
    assert changes[-1] == (0, 0)
    assert len(changes) == 4


async def test_sends_metadata_chunks_and_complete_in_order():
    channel = MemoryChannel()
    payload = make_payload(150)
    orchestrator = make_orchestrator(channel, payload)

    await orchestrator.run()

    types = [m.type for m in channel.sent]
    assert types == [
        TransferMessageType.METADATA,
        TransferMessageType.CHUNK,
        TransferMessageType.CHUNK,
        TransferMessageType.COMPLETE,
    ]
    assert channel.sent[0].headers['data'] == {
        'name': 'data.bin', 'size': 150, 'mime_type': 'application/octet-stream',
    }
    chunks = channel.sent_of(TransferMessageType.CHUNK)
    assert [len(c.data) for c in chunks] == [100, 50]
    assert [c.headers for c in chunks] == [{'index': 0, 'total': 2}, {'index': 1, 'total': 2}]
    assert b''.join(c.data for c in chunks) == payload.data

    assert orchestrator.percent_complete == 100
    assert orchestrator.phase == SharePhase.COMPLETED
    assert orchestrator.succeeded
    assert orchestrator.state is None
    assert orchestrator.tracker.active_count == 0
    assert orchestrator.status.startswith("File transfer complete")
    orchestrator.close()


async def test_progress_is_monotonic_and_reaches_100_only_at_the_end():
    seen = []
    tracker = ProgressTracker(on_change=lambda avg, n: seen.append((avg, n)))
    channel = MemoryChannel()
    orchestrator = make_orchestrator(channel, make_payload(1000), tracker=tracker)

    await orchestrator.run()

    active = [avg for avg, n in seen if n == 1]
    assert active == sorted(active)
    assert active.count(100) == 1
    assert active[-1] == 100
    assert max(active[:-1]) == 99
    orchestrator.close()


async def test_empty_payload_sends_no_chunks():
    channel = MemoryChannel()
    orchestrator = make_orchestrator(channel, make_payload(0))

    await orchestrator.run()

    assert [m.type for m in channel.sent] == [
        TransferMessageType.METADATA,
        TransferMessageType.COMPLETE,
    ]
    assert orchestrator.percent_complete == 100
    orchestrator.close()


async def test_waits_for_channel_availability():
    channel = MemoryChannel(credits=1)
    orchestrator = make_orchestrator(channel, make_payload(300))

    orchestrator.start()
    await wait_for(lambda: len(channel.sent_of(TransferMessageType.CHUNK)) == 1)
    for _ in range(10):
        await asyncio.sleep(0)
    assert len(channel.sent_of(TransferMessageType.CHUNK)) == 1
    assert orchestrator.percent_complete == 33

    channel.release(2)
    await wait_for(lambda: orchestrator.phase == SharePhase.COMPLETED)
    assert len(channel.sent_of(TransferMessageType.CHUNK)) == 3
    orchestrator.close()


async def test_receiver_disconnect_at_half_stops_sending():
    tracker = ProgressTracker()
    closed = []
    first = MemoryChannel(credits=2)
    second = MemoryChannel(credits=2)
    a = make_orchestrator(first, make_payload(400), tracker=tracker,
                          receiver_id='a', on_closed=closed.append)
    b = make_orchestrator(second, make_payload(400), tracker=tracker, receiver_id='b')

    a.start()
    b.start()
    await wait_for(lambda: a.percent_complete == 50 and b.percent_complete == 50)
    assert tracker.active_count == 2
    assert tracker.average == 50

    first.close()
    await wait_for(lambda: a.phase == SharePhase.CLOSED)

    assert closed == ['a']
    assert tracker.active_count == 1
    assert tracker.get('a') is None
    assert a.state is None
    assert "closed before completion" in a.status

    first.release(5)
    for _ in range(10):
        await asyncio.sleep(0)
    assert len(first.sent_of(TransferMessageType.CHUNK)) == 2

    second.release(5)
    await wait_for(lambda: b.phase == SharePhase.COMPLETED)
    b.close()


async def test_send_failure_calls_error_hook_and_abandons():
    errors = []
    statuses = []
    channel = MemoryChannel(fail_on_send=2)
    orchestrator = make_orchestrator(
        channel, make_payload(300),
        on_error=lambda receiver, index, exc: errors.append((receiver, index, exc)),
        on_status=lambda receiver, status: statuses.append(status),
    )

    await orchestrator.run()

    assert len(errors) == 1
    receiver, index, exc = errors[0]
    assert receiver == 'receiver-1'
    assert index == 1
    assert isinstance(exc, ChannelError)
    assert any(s.startswith("Connection error with receiver") for s in statuses)
    assert orchestrator.phase == SharePhase.CLOSED
    assert not orchestrator.succeeded
    assert orchestrator.tracker.active_count == 0
    assert channel.closed
    assert channel.sent_of(TransferMessageType.COMPLETE) == []


async def test_receiver_failure_report_is_surfaced():
    errors = []
    channel = MemoryChannel(credits=1)
    orchestrator = make_orchestrator(
        channel, make_payload(300),
        on_error=lambda receiver, index, exc: errors.append(exc),
    )

    orchestrator.start()
    await wait_for(lambda: orchestrator.percent_complete > 0)
    channel.feed(TransferMessage.error(ErrorCode.PARTIAL_TRANSFER.value, "1 chunk(s) missing"))
    await wait_for(lambda: orchestrator.phase == SharePhase.CLOSED)

    assert len(errors) == 1
    assert isinstance(errors[0], PartialTransferError)
    assert "reported failure" in orchestrator.status
    assert not orchestrator.succeeded


async def test_close_is_idempotent_and_synchronous():
    closed = []
    channel = MemoryChannel(credits=0)
    orchestrator = make_orchestrator(channel, make_payload(300), on_closed=closed.append)
    orchestrator.start()
    await asyncio.sleep(0)

    orchestrator.close(reason="Share ended by sender")
    orchestrator.close()

    assert closed == ['receiver-1']
    assert orchestrator.status == "Share ended by sender"
    assert orchestrator.state is None
    assert channel.closed

    stats = orchestrator.get_stats()
    assert stats['phase'] == 'closed'
    assert stats['chunks_sent'] == 0
