"""
Session Module - Rendezvous Bookkeeping

The in-memory session registry and the coordinator that turns its
transitions into participant notifications.
"""

from .state import SharePhase, advance, can_advance
from .models import FileMetadata, ReceiverRef, ShareSession, Notification, RegistryResult
from .registry import SessionRegistry, generate_share_id
from .coordinator import MessageBus, RendezvousCoordinator

__all__ = [
    'SharePhase',
    'advance',
    'can_advance',
    'FileMetadata',
    'ReceiverRef',
    'ShareSession',
    'Notification',
    'RegistryResult',
    'SessionRegistry',
    'generate_share_id',
    'MessageBus',
    'RendezvousCoordinator',
]
