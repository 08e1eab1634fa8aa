"""
Chunk Reassembler

Design Decision: Reassembly Strategy
====================================

Options Considered:
1. Append chunks as they arrive
   - Simplest
   - Wrong as soon as a chunk is duplicated or reordered

2. Slot list indexed by chunk index
   - Out-of-order and duplicate chunks are harmless
   - Needs to know how many slots to allocate

3. Spill chunks to disk and merge at the end
   - Bounded memory
   - Overkill for a one-shot in-memory delivery

Decision: Slot list
- Preallocate ceil(size / nominal_chunk_size) slots as a hint
- The first chunk's `total` is authoritative and resizes the list
- A duplicate overwrites its slot; its old length is subtracted first so
  progress never double counts

Completion:
- strict (default): any unfilled slot, or a payload whose length differs
  from the announced size, fails the transfer with PartialTransferError
  and the owner is told over the channel
- non-strict: unfilled slots are skipped (legacy behaviour)

A reassembler outlives its channels: metadata arriving after a completed
or closed transfer starts a new cycle, so the receiver can download again.
"""

import inspect
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ..errors import ChannelError, ErrorCode, PartialTransferError
from ..session.models import FileMetadata
from ..session.state import SharePhase, advance
from .chunker import NOMINAL_CHUNK_SIZE
from .orchestrator import percent
from .protocol import DirectChannel, TransferMessage, TransferMessageType

logger = logging.getLogger(__name__)


@dataclass
class ReassemblyState:
    """Receiver-side slots for one transfer."""
    expected_size: int
    slots: List[Optional[bytes]]
    bytes_received: int = 0
    total: Optional[int] = None

    @property
    def missing(self) -> List[int]:
        return [i for i, slot in enumerate(self.slots) if slot is None]


# Delivery callback: (metadata, payload); may be a coroutine function
DeliverHook = Callable[[FileMetadata, bytes], Any]


class ChunkReassembler:
    """
    Accumulates chunks from one direct channel into the final payload.
    """

    def __init__(self, on_deliver: Optional[DeliverHook] = None,
                 nominal_chunk_size: int = NOMINAL_CHUNK_SIZE,
                 strict: bool = True,
                 on_progress: Optional[Callable[[int], None]] = None,
                 on_status: Optional[Callable[[str], None]] = None):
        """
        Initialize a reassembler.

        Args:
            on_deliver: Receives (metadata, payload) on completion
            nominal_chunk_size: Preallocation estimate (hint only)
            strict: Fail on unfilled slots instead of skipping them
            on_progress: Called with the receive percentage
            on_status: Called with every status change
        """
        self.on_deliver = on_deliver
        self.nominal_chunk_size = nominal_chunk_size
        self.strict = strict
        self.on_progress = on_progress
        self.on_status = on_status

        self.phase = SharePhase.CREATED
        self.metadata: Optional[FileMetadata] = None
        self.state: Optional[ReassemblyState] = None
        self.percent = 0
        self.status = "Waiting for file..."

        self._payload: Optional[bytes] = None

    @property
    def payload(self) -> Optional[bytes]:
        """The last assembled payload, kept for redelivery."""
        return self._payload

    # === Protocol events ===

    def on_metadata(self, metadata: FileMetadata):
        """Allocate slots for an announced payload."""
        if self.state is not None and metadata == self.metadata:
            logger.debug("Ignoring duplicate metadata")
            return
        if self.phase in (SharePhase.COMPLETED, SharePhase.CLOSED):
            # New channel after a finished one: start a fresh cycle
            self.phase = SharePhase.CREATED
        self.phase = advance(self.phase, SharePhase.TRANSFERRING)
        self.metadata = metadata

        estimate = math.ceil(metadata.size / self.nominal_chunk_size)
        self.state = ReassemblyState(
            expected_size=metadata.size,
            slots=[None] * estimate,
        )
        self.percent = 0
        self._set_status("Receiving file...")
        logger.info(f"Receiving {metadata.name} ({metadata.size:,} bytes), "
                    f"~{estimate} chunks expected")

    def on_chunk(self, index: int, total: int, data: bytes) -> bool:
        """
        Store one chunk.

        Returns:
            True if the chunk was stored
        """
        state = self.state
        if state is None:
            logger.warning(f"Dropping chunk {index}: no metadata received")
            return False

        if state.total is None:
            if total != len(state.slots):
                logger.debug(f"Resizing slots from {len(state.slots)} to {total}")
                if total > len(state.slots):
                    state.slots.extend([None] * (total - len(state.slots)))
                else:
                    del state.slots[total:]
            state.total = total
        elif total != state.total:
            logger.warning(f"Chunk {index} claims total {total}, expected {state.total}")

        if index < 0 or index >= state.total:
            logger.warning(f"Dropping out-of-range chunk {index}/{state.total}")
            return False

        previous = state.slots[index]
        if previous is not None:
            state.bytes_received -= len(previous)
            logger.debug(f"Duplicate chunk {index}")
        state.slots[index] = data
        state.bytes_received += len(data)

        value = min(99, percent(state.bytes_received, state.expected_size))
        if value > self.percent:
            self.percent = value
            if self.on_progress:
                self.on_progress(value)
        return True

    async def on_complete(self) -> bytes:
        """
        Concatenate the filled slots and deliver the payload.

        Raises:
            PartialTransferError: In strict mode, if slots are unfilled or
                the payload length differs from the announced size
        """
        state = self.state
        if state is None:
            self._fail(PartialTransferError("Transfer completed before any metadata"))

        missing = state.missing
        payload = b''.join(slot for slot in state.slots if slot is not None)

        if self.strict and missing:
            self._fail(PartialTransferError(
                f"Transfer incomplete: {len(missing)} chunk(s) missing", missing
            ))
        if self.strict and len(payload) != state.expected_size:
            self._fail(PartialTransferError(
                f"Transfer incomplete: got {len(payload):,} of {state.expected_size:,} bytes"
            ))
        if missing:
            logger.warning(f"Skipping {len(missing)} unfilled slot(s)")

        self.phase = advance(self.phase, SharePhase.COMPLETED)
        self.percent = 100
        if self.on_progress:
            self.on_progress(100)

        self._payload = payload
        try:
            await self._deliver(payload)
        finally:
            self.state = None

        self._set_status("File transfer complete!")
        return payload

    async def redeliver(self) -> bytes:
        """Hand the already-assembled payload to the delivery callback again."""
        if self._payload is None:
            raise PartialTransferError("Nothing has been received yet")
        await self._deliver(self._payload)
        return self._payload

    def close(self, reason: Optional[str] = None):
        """Release reassembly state (channel closed)."""
        if self.phase == SharePhase.CLOSED:
            return
        was_active = self.phase == SharePhase.TRANSFERRING
        self.phase = advance(self.phase, SharePhase.CLOSED)
        self.state = None
        if was_active:
            self._set_status(reason or "Connection closed before the transfer completed")
            logger.info("Reassembly abandoned")

    # === Channel driver ===

    async def consume(self, channel: DirectChannel) -> Optional[bytes]:
        """
        Feed every message from a channel into the reassembler.

        Returns:
            The delivered payload, or None if the transfer did not complete
        """
        payload = None
        try:
            while True:
                message = await channel.receive()
                if message is None:
                    break

                if message.type == TransferMessageType.METADATA:
                    try:
                        self.on_metadata(FileMetadata.from_dict(message.headers.get('data')))
                    except ValueError as e:
                        logger.error(f"Invalid metadata: {e}")
                        await self._report(channel, ErrorCode.BAD_REQUEST, str(e))
                        break

                elif message.type == TransferMessageType.CHUNK:
                    try:
                        index = int(message.headers['index'])
                        total = int(message.headers['total'])
                    except (KeyError, TypeError, ValueError):
                        logger.warning("Dropping chunk with malformed header")
                        continue
                    self.on_chunk(index, total, message.data)

                elif message.type == TransferMessageType.COMPLETE:
                    try:
                        payload = await self.on_complete()
                    except PartialTransferError as e:
                        await self._report(channel, ErrorCode.PARTIAL_TRANSFER, str(e))
                    break

                else:
                    logger.debug(f"Ignoring {message.type.value} message")
        finally:
            channel.close()
            self.close()

        return payload

    # === Internals ===

    async def _deliver(self, payload: bytes):
        if self.on_deliver is None:
            return
        result = self.on_deliver(self.metadata, payload)
        if inspect.isawaitable(result):
            await result

    async def _report(self, channel: DirectChannel, code: ErrorCode, message: str):
        """Tell the owner why the transfer failed."""
        try:
            await channel.send(TransferMessage.error(code.value, message))
        except ChannelError as e:
            logger.debug(f"Could not report failure to owner: {e}")

    def _fail(self, error: PartialTransferError):
        logger.error(str(error))
        self._set_status(str(error))
        self.state = None
        self.phase = advance(self.phase, SharePhase.CLOSED)
        raise error

    def _set_status(self, status: str):
        self.status = status
        if self.on_status:
            self.on_status(status)
