"""
Transfer Orchestrator

Owner side of the transfer protocol; one instance per receiver.

Pacing:
1. Send one `metadata` message
2. For each chunk: wait for the channel's availability signal, read the
   next slice, send it, advance `next_chunk_index`
3. After the final slice send exactly one `complete`

Progress is `round(next_chunk_index / total_chunks * 100)`, held at 99
until `complete` has gone out so that 100 always means "done".

A failed send is reported to the `on_error` hook and the transfer is
abandoned. There is no retry and no resumption.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..errors import ChannelError, ErrorCode, PartialTransferError
from ..session.models import FileMetadata
from ..session.state import SharePhase, advance
from .chunker import CHUNK_SIZE, FileChunker, Payload
from .protocol import DirectChannel, TransferMessage, TransferMessageType

logger = logging.getLogger(__name__)


def percent(part: int, whole: int) -> int:
    """Integer percentage rounded half-up; 0 for an empty whole."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (whole * 2)


@dataclass
class TransferState:
    """Per-receiver progress on the owner side."""
    receiver_id: str
    total_chunks: int
    next_chunk_index: int = 0
    percent_complete: int = 0
    bytes_sent: int = 0
    started_at: float = field(default_factory=time.time)


# Hook types
ErrorHook = Callable[[str, Optional[int], Exception], None]
StatusHook = Callable[[str, str], None]
ProgressHook = Callable[[int, int], None]


class ProgressTracker:
    """
    Aggregate progress across the receivers of one share.

    The average is the arithmetic mean of the active receivers' percents.
    A receiver leaves the denominator when it completes or disconnects.
    """

    def __init__(self, on_change: Optional[ProgressHook] = None):
        """
        Args:
            on_change: Called with (average, active_count) on every change
        """
        self.on_change = on_change
        self._progress: Dict[str, int] = {}

    @property
    def active_count(self) -> int:
        return len(self._progress)

    @property
    def average(self) -> int:
        if not self._progress:
            return 0
        return percent(sum(self._progress.values()), len(self._progress) * 100)

    def get(self, receiver_id: str) -> Optional[int]:
        return self._progress.get(receiver_id)

    def update(self, receiver_id: str, value: int):
        self._progress[receiver_id] = value
        self._notify()

    def remove(self, receiver_id: str):
        if self._progress.pop(receiver_id, None) is not None:
            self._notify()

    def _notify(self):
        if self.on_change:
            try:
                self.on_change(self.average, self.active_count)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")


def _log_error(receiver_id: str, index: Optional[int], error: Exception):
    where = f"chunk {index}" if index is not None else "transfer"
    logger.error(f"Transfer to {receiver_id} failed at {where}: {error}")


class TransferOrchestrator:
    """
    Streams one payload to one receiver over an open direct channel.
    """

    def __init__(self, receiver_id: str, channel: DirectChannel, payload: Payload,
                 metadata: FileMetadata, chunk_size: int = CHUNK_SIZE,
                 tracker: Optional[ProgressTracker] = None,
                 on_error: Optional[ErrorHook] = None,
                 on_status: Optional[StatusHook] = None,
                 on_closed: Optional[Callable[[str], None]] = None):
        """
        Initialize an orchestrator.

        Args:
            receiver_id: Coordination connection id of the receiver
            channel: Open direct channel to the receiver
            payload: Source of the bytes to send
            metadata: Metadata snapshot sent ahead of the chunks
            chunk_size: Fixed slice size
            tracker: Shared aggregate progress tracker
            on_error: Observability hook for send failures
            on_status: Called with (receiver_id, status) on every status change
            on_closed: Called with receiver_id once state is released
        """
        self.receiver_id = receiver_id
        self.channel = channel
        self.payload = payload
        self.metadata = metadata
        self.chunker = FileChunker(chunk_size)
        self.tracker = tracker or ProgressTracker()
        self.on_error = on_error or _log_error
        self.on_status = on_status
        self.on_closed = on_closed

        self.phase = SharePhase.CREATED
        self.state: Optional[TransferState] = None
        self.percent_complete = 0
        self.status = "Waiting for connection"
        self.failed = False

        self._task: Optional[asyncio.Task] = None
        self._listen_task: Optional[asyncio.Task] = None

        # Statistics
        self.chunks_sent = 0
        self.bytes_sent = 0

    @property
    def short_id(self) -> str:
        return self.receiver_id[:6]

    @property
    def is_active(self) -> bool:
        return self.phase in (SharePhase.CREATED, SharePhase.TRANSFERRING)

    @property
    def succeeded(self) -> bool:
        return self.percent_complete == 100 and not self.failed

    def start(self) -> asyncio.Task:
        """
        Begin streaming. Must be called from a running event loop.

        Returns:
            The pacing task
        """
        self.phase = advance(self.phase, SharePhase.TRANSFERRING)
        self.state = TransferState(
            receiver_id=self.receiver_id,
            total_chunks=self.chunker.get_chunk_count(self.metadata.size),
        )
        self.tracker.update(self.receiver_id, 0)

        self._task = asyncio.create_task(self._run())
        self._listen_task = asyncio.create_task(self._listen())
        return self._task

    async def run(self):
        """Start and wait for the pacing loop to finish."""
        task = self.start()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def close(self, reason: Optional[str] = None):
        """
        Release this receiver's transfer state.

        Synchronous: cancels the pacing and listening tasks, drops the
        receiver from the progress tracker and closes the channel.
        """
        if self.phase == SharePhase.CLOSED:
            return

        was_active = self.is_active
        self.phase = advance(self.phase, SharePhase.CLOSED)

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (self._task, self._listen_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        self.state = None
        self.tracker.remove(self.receiver_id)
        self.channel.close()

        if was_active:
            self._set_status(
                reason or f"Connection to receiver {self.short_id}... closed before completion"
            )
            logger.info(f"Transfer to {self.receiver_id} abandoned")

        if self.on_closed:
            self.on_closed(self.receiver_id)

    # === Internals ===

    async def _run(self):
        state = self.state
        index: Optional[int] = None

        try:
            await self.channel.send(TransferMessage.metadata(self.metadata.to_dict()))
            self._set_status(f"Connected to receiver {self.short_id}... Starting file transfer.")
            logger.info(f"Sending {self.metadata.name} to {self.receiver_id} "
                        f"in {state.total_chunks} chunks")

            while state.next_chunk_index < state.total_chunks:
                await self.channel.ready()

                index = state.next_chunk_index
                data = await self.chunker.read_chunk(self.payload, index)
                await self.channel.send(
                    TransferMessage.chunk(index, state.total_chunks, data)
                )

                state.next_chunk_index += 1
                state.bytes_sent += len(data)
                self.chunks_sent += 1
                self.bytes_sent += len(data)
                self._set_percent(
                    min(99, percent(state.next_chunk_index, state.total_chunks))
                )

            index = None
            await self.channel.send(TransferMessage.complete())
            self._complete()

        except (ChannelError, OSError) as e:
            self._fail(index, e)

    async def _listen(self):
        """Watch the channel for receiver reports and for closure."""
        while True:
            message = await self.channel.receive()
            if message is None:
                break
            if message.type == TransferMessageType.ERROR:
                self._on_receiver_error(message)
                return
            logger.debug(f"Ignoring {message.type.value} from {self.receiver_id}")

        self.close()

    def _complete(self):
        self.phase = advance(self.phase, SharePhase.COMPLETED)
        self._set_percent(100)
        self.state = None
        self.tracker.remove(self.receiver_id)
        self._set_status(f"File transfer complete for receiver {self.short_id}...")
        logger.info(f"Transfer to {self.receiver_id} complete: {self.bytes_sent:,} bytes")

    def _fail(self, index: Optional[int], error: Exception):
        self.failed = True
        message = f"Connection error with receiver {self.short_id}...: {error}"
        self._set_status(message)
        try:
            self.on_error(self.receiver_id, index, error)
        except Exception as e:
            logger.error(f"Error hook failed: {e}")
        self.close(reason=message)

    def _on_receiver_error(self, message: TransferMessage):
        self.failed = True
        code = message.headers.get('code')
        text = message.headers.get('message', '')
        status = f"Receiver {self.short_id}... reported failure: {text}"
        if code == ErrorCode.PARTIAL_TRANSFER.value:
            error: Exception = PartialTransferError(text)
        else:
            error = ChannelError(text)

        self._set_status(status)
        try:
            self.on_error(self.receiver_id, None, error)
        except Exception as e:
            logger.error(f"Error hook failed: {e}")
        self.close(reason=status)

    def _set_percent(self, value: int):
        if self.state is not None:
            self.state.percent_complete = value
        self.percent_complete = value
        self.tracker.update(self.receiver_id, value)

    def _set_status(self, status: str):
        self.status = status
        if self.on_status:
            self.on_status(self.receiver_id, status)

    def get_stats(self) -> dict:
        return {
            'receiver_id': self.receiver_id,
            'phase': self.phase.value,
            'percent_complete': self.percent_complete,
            'chunks_sent': self.chunks_sent,
            'bytes_sent': self.bytes_sent,
            'status': self.status,
        }
