"""
Error taxonomy for PeerShare.

Coordination-side failures (unknown share, non-owner publish) are reported as
structured results carrying an ErrorCode and never end a session. Transfer-side
failures are raised as exceptions and stay isolated to one direct channel.
"""

from enum import Enum
from typing import List, Optional


class ErrorCode(Enum):
    """Machine-readable error codes used on the wire and in registry results."""
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    BAD_REQUEST = "bad_request"
    CHANNEL_ERROR = "channel_error"
    PARTIAL_TRANSFER = "partial_transfer"


class PeerShareError(Exception):
    """Base exception class for all PeerShare errors."""
    code: ErrorCode = ErrorCode.BAD_REQUEST


class ShareNotFoundError(PeerShareError):
    """Raised when a share id is unknown, ended or expired."""
    code = ErrorCode.NOT_FOUND


class UnauthorizedError(PeerShareError):
    """Raised when a participant performs an owner-only operation."""
    code = ErrorCode.UNAUTHORIZED


class ChannelError(PeerShareError):
    """Raised when a direct channel fails, errors or is already closed."""
    code = ErrorCode.CHANNEL_ERROR


class PartialTransferError(PeerShareError):
    """
    Raised when a transfer completes with unfilled chunk slots.

    Attributes:
        missing: Indices of the slots that never received data
    """
    code = ErrorCode.PARTIAL_TRANSFER

    def __init__(self, message: str, missing: Optional[List[int]] = None):
        super().__init__(message)
        self.missing = missing or []


class InvalidTransitionError(PeerShareError):
    """Raised when a session or transfer is moved to a phase it cannot reach."""
    pass
