"""
Rendezvous Coordinator

Translates coordination-channel events into registry operations and
delivers the resulting notifications over a message bus.

The registry call always completes before the first notification is
awaited, so concurrent events from other connections never observe a
half-applied transition.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from ..errors import ErrorCode
from .models import (
    FileMetadata, Notification, RegistryResult,
    CREATE_SHARE, JOIN_SHARE, PUBLISH_OWNER_ID, PUBLISH_RECEIVER_ID,
    PUBLISH_METADATA, REQUEST_DOWNLOAD, END_SHARE, SIGNAL,
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class MessageBus:
    """
    Delivers server -> client notifications.

    Delivery is at-least-once from the participants' point of view: they
    must tolerate duplicate owner-id and file-metadata notifications.
    """

    async def send(self, connection_id: str, event: str,
                   payload: Dict[str, Any]) -> bool:
        """
        Send one notification.

        Returns:
            True if the message was handed to the connection
        """
        raise NotImplementedError


# Type for event handlers
EventHandler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class RendezvousCoordinator:
    """
    Drives the session registry from coordination-channel events.

    Guarantees:
    - exactly one download-requested per successful request
    - owner-id fan-out to all current receivers
    - exactly one termination notice per member when a share ends
    """

    def __init__(self, registry: SessionRegistry, bus: MessageBus):
        self.registry = registry
        self.bus = bus

        self._handlers: Dict[str, EventHandler] = {
            CREATE_SHARE: self._on_create_share,
            JOIN_SHARE: self._on_join_share,
            PUBLISH_OWNER_ID: self._on_publish_owner_id,
            PUBLISH_RECEIVER_ID: self._on_publish_receiver_id,
            PUBLISH_METADATA: self._on_publish_metadata,
            REQUEST_DOWNLOAD: self._on_request_download,
            END_SHARE: self._on_end_share,
            SIGNAL: self._on_signal,
        }

        # Statistics
        self.notifications_sent = 0
        self.notifications_dropped = 0

    async def handle(self, connection_id: str, event: str,
                     data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Handle one event from a connection.

        Returns:
            Reply payload; callers only send it back for acknowledged requests
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event {event!r} from {connection_id}")
            return _error_reply(ErrorCode.BAD_REQUEST, f"Unknown event: {event}")
        if data is not None and not isinstance(data, dict):
            return _error_reply(ErrorCode.BAD_REQUEST, "Event data must be an object")

        try:
            return await handler(connection_id, data or {})
        except ValueError as e:
            logger.warning(f"Bad {event} from {connection_id}: {e}")
            return _error_reply(ErrorCode.BAD_REQUEST, str(e))

    async def disconnect(self, connection_id: str):
        """Clean up after a connection closes."""
        logger.info(f"Connection {connection_id} disconnected")
        result = self.registry.remove_connection(connection_id)
        await self.dispatch(result.notifications)

    async def expire_sessions(self, now: Optional[float] = None) -> int:
        """Expire stale shares; returns how many ended."""
        result = self.registry.expire(now)
        await self.dispatch(result.notifications)
        return len(result.value or [])

    async def dispatch(self, notifications: Iterable[Notification]):
        """Deliver notifications in order."""
        for notification in notifications:
            delivered = await self.bus.send(
                notification.target, notification.event, notification.payload
            )
            if delivered:
                self.notifications_sent += 1
            else:
                self.notifications_dropped += 1
                logger.debug(f"Dropped {notification.event} for {notification.target}")

    # === Event handlers ===

    async def _on_create_share(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        share_id = self.registry.create(connection_id)
        return {'ok': True, 'share_id': share_id}

    async def _on_join_share(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.registry.join(_require(data, 'share_id'), connection_id)
        await self.dispatch(result.notifications)
        if not result.ok:
            return result.to_reply()
        metadata = result.value
        return {'ok': True, 'metadata': metadata.to_dict() if metadata else None}

    async def _on_publish_owner_id(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.registry.publish_owner_rendezvous_id(
            _require(data, 'share_id'),
            _require(data, 'rendezvous_id'),
            caller_id=connection_id,
        )
        return await self._finish(result)

    async def _on_publish_receiver_id(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.registry.publish_receiver_rendezvous_id(
            _require(data, 'share_id'),
            connection_id,
            _require(data, 'rendezvous_id'),
        )
        return await self._finish(result)

    async def _on_publish_metadata(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        metadata = FileMetadata.from_dict(data.get('metadata'))
        result = self.registry.publish_metadata(
            _require(data, 'share_id'), connection_id, metadata
        )
        return await self._finish(result)

    async def _on_request_download(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        rendezvous_id = data.get('rendezvous_id')
        if rendezvous_id is not None and not isinstance(rendezvous_id, str):
            raise ValueError("rendezvous_id must be a string")
        result = self.registry.request_download(
            _require(data, 'share_id'), connection_id, rendezvous_id
        )
        return await self._finish(result)

    async def _on_end_share(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.registry.end_share(_require(data, 'share_id'), connection_id)
        return await self._finish(result)

    async def _on_signal(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.registry.relay_signal(
            _require(data, 'share_id'),
            connection_id,
            _require(data, 'to'),
            data.get('signal'),
        )
        return await self._finish(result)

    async def _finish(self, result: RegistryResult) -> Dict[str, Any]:
        await self.dispatch(result.notifications)
        if not result.ok:
            return result.to_reply()
        return {'ok': True}

    def get_stats(self) -> dict:
        """Get coordinator statistics."""
        return {
            **self.registry.get_stats(),
            'notifications_sent': self.notifications_sent,
            'notifications_dropped': self.notifications_dropped,
        }


def _require(data: Dict[str, Any], key: str) -> str:
    """Fetch a required non-empty string field."""
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing or invalid {key!r}")
    return value


def _error_reply(code: ErrorCode, message: str) -> Dict[str, Any]:
    return {'ok': False, 'error': code.value, 'message': message}
