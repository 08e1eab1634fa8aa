"""
Session Data Model

Plain dataclasses shared by the registry, the coordinator and the
participant clients. FileMetadata is frozen: once an orchestrator has taken a
copy for a transfer, a later metadata publish cannot change it underneath.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ErrorCode
from .state import SharePhase


# === Coordination events ===

# Client -> server
CREATE_SHARE = "create-share"
JOIN_SHARE = "join-share"
PUBLISH_OWNER_ID = "publish-owner-id"
PUBLISH_RECEIVER_ID = "publish-receiver-id"
PUBLISH_METADATA = "publish-metadata"
REQUEST_DOWNLOAD = "request-download"
END_SHARE = "end-share"
SIGNAL = "signal"

# Server -> client
CONNECTED = "connected"
ACK = "ack"
ERROR = "error"
RECEIVER_JOINED = "receiver-joined"
RECEIVER_DISCONNECTED = "receiver-disconnected"
OWNER_ID = "owner-id"
FILE_METADATA = "file-metadata"
DOWNLOAD_REQUESTED = "download-requested"
SHARE_ENDED = "share-ended"
SHARE_EXPIRED = "share-expired"


@dataclass(frozen=True)
class FileMetadata:
    """Name, size and MIME type of the offered payload."""
    name: str
    size: int
    mime_type: str = "application/octet-stream"

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("File name must be a non-empty string")
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size < 0:
            raise ValueError(f"File size must be a non-negative integer, got {self.size!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'size': self.size,
            'mime_type': self.mime_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileMetadata':
        """
        Build metadata from a wire dictionary.

        Accepts `type` as an alias of `mime_type` (browser File objects).

        Raises:
            ValueError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise ValueError("Metadata must be an object")
        try:
            name = data['name']
            size = data['size']
        except KeyError as e:
            raise ValueError(f"Metadata is missing {e.args[0]!r}")
        mime_type = data.get('mime_type') or data.get('type') or "application/octet-stream"
        return cls(name=name, size=size, mime_type=mime_type)


@dataclass
class ReceiverRef:
    """A receiver's membership in one share."""
    connection_id: str
    rendezvous_id: Optional[str] = None
    download_pending: bool = False
    phase: SharePhase = SharePhase.CREATED


@dataclass
class ShareSession:
    """
    State of a single file-offering context.

    Owned exclusively by the SessionRegistry.
    """
    id: str
    owner_connection_id: str
    owner_rendezvous_id: Optional[str] = None
    receivers: Dict[str, ReceiverRef] = field(default_factory=dict)
    file_metadata: Optional[FileMetadata] = None
    created_at: float = field(default_factory=time.time)
    phase: SharePhase = SharePhase.CREATED

    @property
    def member_ids(self) -> List[str]:
        """Owner first, then receivers in join order."""
        return [self.owner_connection_id, *self.receivers.keys()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'share_id': self.id,
            'phase': self.phase.value,
            'owner_ready': self.owner_rendezvous_id is not None,
            'total_receivers': len(self.receivers),
            'metadata': self.file_metadata.to_dict() if self.file_metadata else None,
            'created_at': self.created_at,
        }


@dataclass
class Notification:
    """A server -> client message produced by a registry transition."""
    target: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RegistryResult:
    """
    Structured outcome of a registry operation.

    Failures (NOT_FOUND, UNAUTHORIZED, BAD_REQUEST) are values, not
    exceptions, and carry no notifications.
    """
    ok: bool = True
    value: Any = None
    error: Optional[ErrorCode] = None
    message: str = ""
    notifications: List[Notification] = field(default_factory=list)

    @classmethod
    def failure(cls, error: ErrorCode, message: str) -> 'RegistryResult':
        return cls(ok=False, error=error, message=message)

    def to_reply(self) -> Dict[str, Any]:
        """Wire form of a failed result."""
        return {
            'ok': self.ok,
            'error': self.error.value if self.error else None,
            'message': self.message,
        }
