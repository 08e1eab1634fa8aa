"""
Client Module - Share Participants

Owner and receiver sides of a share, both driven by a WebSocket
connection to the coordination service.
"""

from .signaling import SignalingClient, to_websocket_url, DISCONNECTED
from .owner import ShareOwner, generate_owner_rendezvous_id
from .receiver import ShareReceiver, safe_filename

__all__ = [
    'SignalingClient',
    'to_websocket_url',
    'DISCONNECTED',
    'ShareOwner',
    'generate_owner_rendezvous_id',
    'ShareReceiver',
    'safe_filename',
]
