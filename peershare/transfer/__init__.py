"""
Transfer Module - Chunked Payload Transfer

Owner-side pacing and receiver-side reassembly over a direct channel.
"""

from .chunker import FileChunker, BytesPayload, FilePayload, CHUNK_SIZE, NOMINAL_CHUNK_SIZE
from .protocol import (
    TransferMessage, TransferMessageType, DirectChannel, StreamChannel,
    ChannelListener, connect_channel, parse_rendezvous_id,
)
from .orchestrator import TransferOrchestrator, TransferState, ProgressTracker, percent
from .reassembler import ChunkReassembler, ReassemblyState

__all__ = [
    'FileChunker',
    'BytesPayload',
    'FilePayload',
    'CHUNK_SIZE',
    'NOMINAL_CHUNK_SIZE',
    'TransferMessage',
    'TransferMessageType',
    'DirectChannel',
    'StreamChannel',
    'ChannelListener',
    'connect_channel',
    'parse_rendezvous_id',
    'TransferOrchestrator',
    'TransferState',
    'ProgressTracker',
    'percent',
    'ChunkReassembler',
    'ReassemblyState',
]
