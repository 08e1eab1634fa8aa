"""
Session Registry

Design Decision: Registry Shape
===============================

Options Considered:
1. Module-level dict of sessions touched directly by socket handlers
   - What a quick prototype does
   - Hidden global state, notifications interleaved with mutation

2. Registry object that mutates state and sends notifications itself
   - Fewer moving parts
   - Ties pure bookkeeping to the message bus

3. Registry object returning notifications as data
   - Every operation is a pure state transition over the mapping
   - The coordinator decides how and when to deliver

Decision: Option 3
- No operation awaits, so under a single event loop every mutation is atomic
- Results are structured (RegistryResult); NOT_FOUND/UNAUTHORIZED never raise
- Issued ids are remembered so an id is never handed out twice

Ordering:
- A receiver that joins before the owner's rendezvous id is known gets it
  later through the owner-id fan-out.
- A download request that arrives before both rendezvous ids are known is
  kept pending and flushed exactly once when the missing id is published.
"""

import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Set

from ..errors import ErrorCode
from .models import (
    FileMetadata, Notification, ReceiverRef, RegistryResult, ShareSession,
    RECEIVER_JOINED, RECEIVER_DISCONNECTED, OWNER_ID, FILE_METADATA,
    DOWNLOAD_REQUESTED, SHARE_ENDED, SHARE_EXPIRED, SIGNAL,
)
from .state import SharePhase, advance

logger = logging.getLogger(__name__)

SHARE_NOT_FOUND_MESSAGE = "Share not found or expired"


def generate_share_id() -> str:
    """Generate a random, high-entropy share id (UUID4)."""
    return str(uuid.uuid4())


class SessionRegistry:
    """
    In-memory mapping from share id to ShareSession.

    The registry exclusively owns sessions and their receiver sets.
    """

    def __init__(self, session_ttl: float = 0.0,
                 id_factory: Callable[[], str] = generate_share_id,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the registry.

        Args:
            session_ttl: Seconds after which a share expires (0 disables)
            id_factory: Source of new share ids
            clock: Time source used for created_at and expiry
        """
        self.session_ttl = session_ttl
        self._id_factory = id_factory
        self._clock = clock

        self._sessions: Dict[str, ShareSession] = {}
        self._issued: Set[str] = set()

        # Statistics
        self.sessions_created = 0
        self.sessions_ended = 0
        self.sessions_expired = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, share_id: str) -> bool:
        return share_id in self._sessions

    def get(self, share_id: str) -> Optional[ShareSession]:
        """Get a session by id."""
        return self._sessions.get(share_id)

    def sessions_for(self, connection_id: str) -> List[ShareSession]:
        """All sessions a connection owns or has joined."""
        return [
            s for s in self._sessions.values()
            if s.owner_connection_id == connection_id or connection_id in s.receivers
        ]

    # === Lifecycle ===

    def create(self, owner_id: str) -> str:
        """
        Create a share owned by `owner_id`.

        Returns:
            The new share id
        """
        share_id = self._id_factory()
        while share_id in self._issued:
            share_id = self._id_factory()

        self._issued.add(share_id)
        self._sessions[share_id] = ShareSession(
            id=share_id,
            owner_connection_id=owner_id,
            created_at=self._clock(),
        )
        self.sessions_created += 1

        logger.info(f"Connection {owner_id} created share {share_id}")
        return share_id

    def join(self, share_id: str, receiver_id: str) -> RegistryResult:
        """
        Add a receiver to a share (idempotent).

        Returns:
            RegistryResult whose value is the current metadata (or None)
        """
        session = self._sessions.get(share_id)
        if session is None:
            logger.info(f"Share {share_id} not found or expired")
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)

        if receiver_id == session.owner_connection_id:
            return RegistryResult.failure(
                ErrorCode.BAD_REQUEST, "The owner cannot join its own share"
            )

        result = RegistryResult(value=session.file_metadata)

        if receiver_id not in session.receivers:
            session.receivers[receiver_id] = ReceiverRef(connection_id=receiver_id)
            logger.info(f"Receiver {receiver_id} joined share {share_id}")
            result.notifications.append(Notification(
                target=session.owner_connection_id,
                event=RECEIVER_JOINED,
                payload={
                    'share_id': share_id,
                    'receiver_id': receiver_id,
                    'total_receivers': len(session.receivers),
                },
            ))

        if session.owner_rendezvous_id:
            result.notifications.append(self._owner_id_notification(session, receiver_id))

        return result

    def end_share(self, share_id: str, caller_id: str) -> RegistryResult:
        """End a share explicitly (owner only)."""
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        if caller_id != session.owner_connection_id:
            return RegistryResult.failure(
                ErrorCode.UNAUTHORIZED, "Only the owner can end this share"
            )

        result = RegistryResult()
        result.notifications.extend(
            self._terminate(session, SHARE_ENDED, "Share ended by sender")
        )
        self.sessions_ended += 1
        return result

    def remove_connection(self, connection_id: str) -> RegistryResult:
        """
        Remove a disconnected participant from every share it belongs to.

        An owner's shares end: every member, owner included, gets one
        share-ended. A receiver is dropped and the owner gets one
        receiver-disconnected per share.
        """
        result = RegistryResult()

        for session in list(self._sessions.values()):
            if session.owner_connection_id == connection_id:
                logger.info(f"Owner {connection_id} disconnected, ending share {session.id}")
                result.notifications.extend(
                    self._terminate(session, SHARE_ENDED, "File sender disconnected")
                )
                self.sessions_ended += 1
                continue

            ref = session.receivers.pop(connection_id, None)
            if ref is not None:
                ref.phase = advance(ref.phase, SharePhase.CLOSED)
                logger.info(f"Receiver {connection_id} disconnected from share {session.id}")
                result.notifications.append(Notification(
                    target=session.owner_connection_id,
                    event=RECEIVER_DISCONNECTED,
                    payload={
                        'share_id': session.id,
                        'receiver_id': connection_id,
                        'total_receivers': len(session.receivers),
                    },
                ))

        return result

    def expire(self, now: Optional[float] = None) -> RegistryResult:
        """End every share older than the session TTL with share-expired."""
        result = RegistryResult(value=[])
        if not self.session_ttl:
            return result

        now = self._clock() if now is None else now
        for session in list(self._sessions.values()):
            if now - session.created_at >= self.session_ttl:
                logger.info(f"Share {session.id} expired")
                result.notifications.extend(
                    self._terminate(session, SHARE_EXPIRED, "Share has expired")
                )
                result.value.append(session.id)
                self.sessions_expired += 1

        return result

    # === Rendezvous ids ===

    def publish_owner_rendezvous_id(self, share_id: str, rendezvous_id: str,
                                    caller_id: Optional[str] = None) -> RegistryResult:
        """
        Record the owner's rendezvous id and fan it out to all receivers.

        Late or duplicate calls overwrite. Pending download requests whose
        receiver id is known are flushed to the owner.
        """
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        if caller_id is not None and caller_id != session.owner_connection_id:
            logger.warning(f"Ignoring owner id from non-owner {caller_id} on share {share_id}")
            return RegistryResult.failure(
                ErrorCode.UNAUTHORIZED, "Only the owner can publish the owner id"
            )

        session.owner_rendezvous_id = rendezvous_id
        session.phase = advance(session.phase, SharePhase.OWNER_ID_KNOWN)
        logger.debug(f"Owner rendezvous id for share {share_id}: {rendezvous_id}")

        result = RegistryResult()
        for receiver_id in session.receivers:
            result.notifications.append(self._owner_id_notification(session, receiver_id))
        for ref in session.receivers.values():
            notification = self._flush_download_request(session, ref)
            if notification:
                result.notifications.append(notification)

        return result

    def publish_receiver_rendezvous_id(self, share_id: str, receiver_id: str,
                                       rendezvous_id: str) -> RegistryResult:
        """Attach a rendezvous id to a receiver; no-op if either is missing."""
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        ref = session.receivers.get(receiver_id)
        if ref is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, "Not a member of this share")

        ref.rendezvous_id = rendezvous_id
        result = RegistryResult()
        notification = self._flush_download_request(session, ref)
        if notification:
            result.notifications.append(notification)
        return result

    # === Metadata and downloads ===

    def publish_metadata(self, share_id: str, caller_id: str,
                         metadata: FileMetadata) -> RegistryResult:
        """Set the share's file metadata (owner only, latest publish wins)."""
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        if caller_id != session.owner_connection_id:
            logger.warning(f"Ignoring metadata from non-owner {caller_id} on share {share_id}")
            return RegistryResult.failure(
                ErrorCode.UNAUTHORIZED, "Only the owner can publish metadata"
            )

        session.file_metadata = metadata
        logger.info(f"Share {share_id} offers {metadata.name} ({metadata.size:,} bytes)")

        result = RegistryResult(value=metadata)
        for receiver_id in session.receivers:
            result.notifications.append(Notification(
                target=receiver_id,
                event=FILE_METADATA,
                payload={'share_id': share_id, 'metadata': metadata.to_dict()},
            ))
        return result

    def request_download(self, share_id: str, receiver_id: str,
                         rendezvous_id: Optional[str] = None) -> RegistryResult:
        """
        Record a receiver's download request.

        Returns:
            RegistryResult whose value is the owner's connection id. The
            download-requested notification is included now if both
            rendezvous ids are known, otherwise it is deferred.
        """
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        ref = session.receivers.get(receiver_id)
        if ref is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, "Not a member of this share")

        if rendezvous_id:
            ref.rendezvous_id = rendezvous_id
        ref.phase = advance(ref.phase, SharePhase.DOWNLOAD_REQUESTED)
        ref.download_pending = True

        result = RegistryResult(value=session.owner_connection_id)
        notification = self._flush_download_request(session, ref)
        if notification:
            result.notifications.append(notification)
        else:
            logger.info(f"Download request from {receiver_id} on share {share_id} is pending")
        return result

    def relay_signal(self, share_id: str, sender_id: str, target_id: str,
                     signal) -> RegistryResult:
        """Forward an opaque signalling payload between two members of a share."""
        session = self._sessions.get(share_id)
        if session is None:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND_MESSAGE)
        members = session.member_ids
        if sender_id not in members or target_id not in members:
            return RegistryResult.failure(ErrorCode.NOT_FOUND, "Not a member of this share")

        result = RegistryResult()
        result.notifications.append(Notification(
            target=target_id,
            event=SIGNAL,
            payload={'share_id': share_id, 'from': sender_id, 'signal': signal},
        ))
        return result

    # === Internals ===

    def _owner_id_notification(self, session: ShareSession, receiver_id: str) -> Notification:
        return Notification(
            target=receiver_id,
            event=OWNER_ID,
            payload={'share_id': session.id, 'rendezvous_id': session.owner_rendezvous_id},
        )

    def _flush_download_request(self, session: ShareSession,
                                ref: ReceiverRef) -> Optional[Notification]:
        """Emit a pending request once both rendezvous ids are known."""
        if not ref.download_pending:
            return None
        if not session.owner_rendezvous_id or not ref.rendezvous_id:
            return None

        ref.download_pending = False
        logger.info(f"Notifying owner {session.owner_connection_id} that "
                    f"{ref.connection_id} requested share {session.id}")
        return Notification(
            target=session.owner_connection_id,
            event=DOWNLOAD_REQUESTED,
            payload={
                'share_id': session.id,
                'receiver_id': ref.connection_id,
                'rendezvous_id': ref.rendezvous_id,
            },
        )

    def _terminate(self, session: ShareSession, event: str,
                   message: str) -> List[Notification]:
        """Delete a session and build one termination notice per member."""
        notifications = [
            Notification(
                target=member_id,
                event=event,
                payload={'share_id': session.id, 'message': message},
            )
            for member_id in session.member_ids
        ]
        for ref in session.receivers.values():
            ref.phase = advance(ref.phase, SharePhase.CLOSED)
        session.receivers.clear()
        session.phase = advance(session.phase, SharePhase.CLOSED)
        del self._sessions[session.id]
        return notifications

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            'active_shares': len(self._sessions),
            'active_receivers': sum(len(s.receivers) for s in self._sessions.values()),
            'shares_created': self.sessions_created,
            'shares_ended': self.sessions_ended,
            'shares_expired': self.sessions_expired,
        }
