"""
Share Receiver

The receiving participant: joins a share, listens for the owner's direct
channel and reassembles the payload.

The receiver's rendezvous id is the host:port of its channel listener. It
is published right after joining so the coordinator can pass it to the
owner with the download request.
"""

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiofiles
import aiofiles.os

from ..errors import ShareNotFoundError
from ..session.models import (
    FileMetadata,
    JOIN_SHARE, PUBLISH_RECEIVER_ID, REQUEST_DOWNLOAD,
    OWNER_ID, FILE_METADATA, SHARE_ENDED, SHARE_EXPIRED,
)
from ..transfer.chunker import NOMINAL_CHUNK_SIZE
from ..transfer.protocol import ChannelListener, StreamChannel
from ..transfer.reassembler import ChunkReassembler

logger = logging.getLogger(__name__)


def safe_filename(name: str) -> str:
    """Strip any directory part from a name announced by the owner."""
    cleaned = Path(name.replace('\\', '/')).name
    if cleaned in ('', '.', '..'):
        return 'download.bin'
    return cleaned


class ShareReceiver:
    """
    Receives one share's payload.
    """

    def __init__(self, signaling, share_id: str, output_dir: Optional[Path] = None,
                 channel_host: str = '127.0.0.1',
                 nominal_chunk_size: int = NOMINAL_CHUNK_SIZE,
                 strict: bool = True, auto_download: bool = True,
                 on_progress: Optional[Callable[[int], None]] = None,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_deliver: Optional[Callable[[FileMetadata, bytes], Any]] = None):
        """
        Initialize a receiver.

        Args:
            signaling: Connected coordination client
            share_id: Share to join
            output_dir: Where delivered files are written (None keeps them in memory)
            channel_host: Interface the channel listener binds to
            nominal_chunk_size: Slot preallocation estimate
            strict: Fail transfers with unfilled slots
            auto_download: Request the download as soon as metadata is known
            on_progress: Called with the receive percentage
            on_status: Called with every status change
            on_deliver: Called with (metadata, payload) on completion
        """
        self.signaling = signaling
        self.share_id = share_id
        self.output_dir = Path(output_dir) if output_dir else None
        self.auto_download = auto_download
        self.on_status = on_status
        self.on_deliver = on_deliver

        self.listener = ChannelListener(self._on_channel, host=channel_host)
        self.reassembler = ChunkReassembler(
            on_deliver=self._deliver,
            nominal_chunk_size=nominal_chunk_size,
            strict=strict,
            on_progress=on_progress,
            on_status=self._set_status,
        )

        self.metadata: Optional[FileMetadata] = None
        self.owner_rendezvous_id: Optional[str] = None
        self.saved_path: Optional[Path] = None
        self.download_requested = False
        self.status = ""

        self._channel: Optional[StreamChannel] = None
        self._done = asyncio.Event()
        self._result: Optional[bytes] = None

        signaling.on(OWNER_ID, self._on_owner_id)
        signaling.on(FILE_METADATA, self._on_file_metadata)
        signaling.on(SHARE_ENDED, self._on_share_closed)
        signaling.on(SHARE_EXPIRED, self._on_share_closed)

    @property
    def rendezvous_id(self) -> str:
        return self.listener.rendezvous_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def start(self):
        """
        Start the channel listener and join the share.

        Raises:
            ShareNotFoundError: If the share is unknown, ended or expired
        """
        await self.listener.start()

        reply = await self.signaling.request(JOIN_SHARE, {'share_id': self.share_id})
        if not reply.get('ok'):
            await self.listener.stop()
            message = reply.get('message') or "Share not found or expired"
            self._set_status(message)
            raise ShareNotFoundError(message)

        await self.signaling.emit(PUBLISH_RECEIVER_ID, {
            'share_id': self.share_id,
            'rendezvous_id': self.rendezvous_id,
        })
        logger.info(f"Joined share {self.share_id} as {self.rendezvous_id}")

        if reply.get('metadata'):
            await self._accept_metadata(reply['metadata'])
        else:
            self._set_status("Waiting for file information...")

    async def request_download(self):
        """Ask the owner to open a direct channel and send the file."""
        reply = await self.signaling.request(REQUEST_DOWNLOAD, {
            'share_id': self.share_id,
            'rendezvous_id': self.rendezvous_id,
        })
        if not reply.get('ok'):
            message = reply.get('message') or "Download request failed"
            self._set_status(message)
            raise ShareNotFoundError(message)

        self.download_requested = True
        self._set_status("Download requested. Waiting for sender...")

    async def wait(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Wait until the payload is delivered or the share ends.

        Returns:
            The payload, or None if the share ended first
        """
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self._result

    async def redeliver(self) -> bytes:
        """Hand the last received payload to the delivery path again."""
        return await self.reassembler.redeliver()

    async def stop(self):
        """Close the channel and the listener."""
        if self._channel is not None:
            self._channel.close()
        self.reassembler.close()
        await self.listener.stop()
        self._done.set()

    # === Notification handlers ===

    def _on_owner_id(self, data: Dict[str, Any]):
        if data.get('share_id') not in (None, self.share_id):
            return
        self.owner_rendezvous_id = data.get('rendezvous_id')
        logger.debug(f"Owner rendezvous id: {self.owner_rendezvous_id}")

    async def _on_file_metadata(self, data: Dict[str, Any]):
        if data.get('share_id') not in (None, self.share_id):
            return
        await self._accept_metadata(data.get('metadata'))

    async def _on_share_closed(self, data: Dict[str, Any]):
        message = data.get('message') or "Share has ended"
        if self._channel is not None:
            self._channel.close()
        self.reassembler.close(reason=message)
        await self.listener.stop()
        if self._result is None:
            self._set_status(message)
        self._done.set()

    # === Direct channel ===

    async def _on_channel(self, channel: StreamChannel):
        """Handle the owner's inbound channel."""
        if self.owner_rendezvous_id and channel.peer_id != self.owner_rendezvous_id:
            logger.warning(f"Rejecting channel from unknown peer {channel.peer_id}")
            return
        if self._channel is not None and not self._channel.closed:
            logger.warning(f"Rejecting second channel from {channel.peer_id}")
            return

        self._channel = channel
        self._set_status("Connected to sender. Receiving file...")
        self._result = await self.reassembler.consume(channel)
        self._done.set()

    async def _deliver(self, metadata: FileMetadata, payload: bytes):
        if self.output_dir is not None:
            self.saved_path = await self._write(metadata, payload)
        if self.on_deliver is not None:
            result = self.on_deliver(metadata, payload)
            if inspect.isawaitable(result):
                await result

    async def _write(self, metadata: FileMetadata, payload: bytes) -> Path:
        await aiofiles.os.makedirs(self.output_dir, exist_ok=True)
        path = self.output_dir / safe_filename(metadata.name)
        temp_path = path.with_name(path.name + '.part')

        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(payload)
        await aiofiles.os.rename(temp_path, path)

        logger.info(f"Saved {metadata.name} to {path}")
        return path

    # === Internals ===

    async def _accept_metadata(self, raw: Optional[Dict[str, Any]]):
        try:
            metadata = FileMetadata.from_dict(raw)
        except ValueError as e:
            logger.error(f"Ignoring invalid metadata: {e}")
            return

        if metadata == self.metadata:
            logger.debug("Ignoring duplicate metadata")
            return
        self.metadata = metadata
        self._set_status(f"Ready to download {metadata.name} ({metadata.size:,} bytes)")

        if self.auto_download and not self.download_requested:
            await self.request_download()

    def _set_status(self, status: str):
        self.status = status
        logger.debug(status)
        if self.on_status:
            self.on_status(status)

    def get_stats(self) -> dict:
        return {
            'share_id': self.share_id,
            'rendezvous_id': self.rendezvous_id,
            'owner_rendezvous_id': self.owner_rendezvous_id,
            'percent': self.reassembler.percent,
            'status': self.status,
            'saved_path': str(self.saved_path) if self.saved_path else None,
        }
