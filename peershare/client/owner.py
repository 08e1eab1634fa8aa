"""
Share Owner

The sending participant: creates a share, publishes the file metadata and
its rendezvous id, and runs one TransferOrchestrator per receiver that
requests the download.
"""

import logging
import secrets
from typing import Any, Callable, Dict, Optional, Set

from ..errors import ShareNotFoundError
from ..session.models import (
    FileMetadata,
    CREATE_SHARE, PUBLISH_METADATA, PUBLISH_OWNER_ID, END_SHARE,
    RECEIVER_JOINED, RECEIVER_DISCONNECTED, DOWNLOAD_REQUESTED,
    SHARE_ENDED, SHARE_EXPIRED,
)
from ..transfer.chunker import CHUNK_SIZE, Payload
from ..transfer.orchestrator import ProgressTracker, TransferOrchestrator
from ..transfer.protocol import connect_channel

logger = logging.getLogger(__name__)


def generate_owner_rendezvous_id() -> str:
    return f"owner-{secrets.token_hex(6)}"


class ShareOwner:
    """
    Offers one payload to any number of receivers.
    """

    def __init__(self, signaling, payload: Payload, chunk_size: int = CHUNK_SIZE,
                 connect_timeout: float = 10.0,
                 on_progress: Optional[Callable[[int, int], None]] = None,
                 on_status: Optional[Callable[[str], None]] = None):
        """
        Initialize an owner.

        Args:
            signaling: Connected coordination client
            payload: The file to offer
            chunk_size: Slice size used by every orchestrator
            connect_timeout: Timeout for dialing a receiver
            on_progress: Called with (average_percent, active_transfers)
            on_status: Called with every status change
        """
        self.signaling = signaling
        self.payload = payload
        self.metadata = FileMetadata(
            name=payload.name,
            size=payload.size,
            mime_type=payload.mime_type,
        )
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout
        self.on_status = on_status

        self.rendezvous_id = generate_owner_rendezvous_id()
        self.share_id: Optional[str] = None
        self.tracker = ProgressTracker(on_change=on_progress)
        self.transfers: Dict[str, TransferOrchestrator] = {}
        self._connecting: Set[str] = set()
        self.total_receivers = 0
        self.completed_transfers = 0
        self.ended = False
        self.status = ""

        signaling.on(RECEIVER_JOINED, self._on_receiver_joined)
        signaling.on(RECEIVER_DISCONNECTED, self._on_receiver_disconnected)
        signaling.on(DOWNLOAD_REQUESTED, self._on_download_requested)
        signaling.on(SHARE_ENDED, self._on_share_closed)
        signaling.on(SHARE_EXPIRED, self._on_share_closed)

    @property
    def active_transfers(self) -> int:
        return sum(1 for t in self.transfers.values() if t.is_active)

    async def start(self) -> str:
        """
        Create the share and publish metadata and rendezvous id.

        Returns:
            The share id to hand to receivers
        """
        reply = await self.signaling.request(CREATE_SHARE)
        self.share_id = reply['share_id']
        logger.info(f"Created share {self.share_id} for {self.metadata.name}")

        reply = await self.signaling.request(PUBLISH_METADATA, {
            'share_id': self.share_id,
            'metadata': self.metadata.to_dict(),
        })
        if not reply.get('ok'):
            raise ShareNotFoundError(reply.get('message', 'Could not publish metadata'))

        await self.signaling.emit(PUBLISH_OWNER_ID, {
            'share_id': self.share_id,
            'rendezvous_id': self.rendezvous_id,
        })

        self._set_status("Waiting for receivers to connect...")
        return self.share_id

    async def stop(self):
        """End the share and abandon every transfer."""
        if self.share_id and not self.ended and self.signaling.connected:
            await self.signaling.request(END_SHARE, {'share_id': self.share_id})
        self._close_all("Share ended by sender")
        self.ended = True

    # === Notification handlers ===

    def _on_receiver_joined(self, data: Dict[str, Any]):
        self.total_receivers = data.get('total_receivers', self.total_receivers)
        self._set_status(
            f"{self.total_receivers} receiver(s) connected. Waiting for download requests..."
        )

    def _on_receiver_disconnected(self, data: Dict[str, Any]):
        receiver_id = data.get('receiver_id', '')
        self.total_receivers = data.get('total_receivers', self.total_receivers)

        transfer = self.transfers.get(receiver_id)
        if transfer is not None:
            transfer.close(reason=f"Receiver {receiver_id[:6]}... disconnected")

        self._set_status(
            f"Receiver {receiver_id[:6]}... disconnected. "
            f"{self.total_receivers} receiver(s) still connected."
        )

    async def _on_download_requested(self, data: Dict[str, Any]):
        receiver_id = data.get('receiver_id')
        rendezvous_id = data.get('rendezvous_id')
        if not receiver_id or not rendezvous_id:
            logger.warning(f"Ignoring incomplete download request: {data}")
            return

        if receiver_id in self._connecting:
            logger.debug(f"Already connecting to {receiver_id}")
            return
        existing = self.transfers.get(receiver_id)
        if existing is not None:
            if existing.is_active:
                logger.debug(f"Transfer to {receiver_id} already running")
                return
            # Finished, but the receiver has not closed the channel yet
            existing.close()

        self._set_status(
            f"Receiver {receiver_id[:6]}... requested download. Establishing connection..."
        )
        self._connecting.add(receiver_id)
        try:
            channel = await connect_channel(
                rendezvous_id, self.rendezvous_id, timeout=self.connect_timeout
            )
        finally:
            self._connecting.discard(receiver_id)
        if channel is None:
            self._set_status(f"Could not reach receiver {receiver_id[:6]}...")
            return
        if self.ended:
            channel.close()
            return

        transfer = TransferOrchestrator(
            receiver_id=receiver_id,
            channel=channel,
            payload=self.payload,
            metadata=self.metadata,
            chunk_size=self.chunk_size,
            tracker=self.tracker,
            on_status=lambda _receiver, status: self._set_status(status),
            on_closed=self._on_transfer_closed,
        )
        self.transfers[receiver_id] = transfer
        transfer.start()

    def _on_share_closed(self, data: Dict[str, Any]):
        message = data.get('message') or "Share has ended"
        self.ended = True
        self._close_all(message)
        self._set_status(message)

    def _on_transfer_closed(self, receiver_id: str):
        transfer = self.transfers.pop(receiver_id, None)
        if transfer is None or not transfer.succeeded:
            return
        self.completed_transfers += 1
        if not self.ended and self.active_transfers == 0:
            self._set_status("All transfers complete. Waiting for new receivers...")

    # === Internals ===

    def _close_all(self, reason: str):
        for transfer in list(self.transfers.values()):
            transfer.close(reason=reason)

    def _set_status(self, status: str):
        self.status = status
        logger.debug(status)
        if self.on_status:
            self.on_status(status)

    def get_stats(self) -> dict:
        return {
            'share_id': self.share_id,
            'total_receivers': self.total_receivers,
            'active_transfers': self.active_transfers,
            'completed_transfers': self.completed_transfers,
            'average_progress': self.tracker.average,
            'transfers': [t.get_stats() for t in self.transfers.values()],
        }
