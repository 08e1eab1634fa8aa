"""
Payload Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 64KB    | Fine-grained progress         | Many frames, more overhead     |
| 256KB   | Good balance, standard        | -                              |
| 1MB     | Lower overhead                | Coarse progress, slow start    |

Decision: 256KB (262,144 bytes) on the sending side
- Progress moves smoothly even for files of a few MB
- A single frame stays far below the protocol's message size cap

The receiving side preallocates with a separate 64KB estimate. The two are
deliberately independent: the first chunk's `total` is authoritative and
the estimate is only a hint.

Chunking Strategy: Fixed-Size
- Chunk i covers bytes [i * chunk_size, min((i + 1) * chunk_size, size))
- The last chunk is the remainder
"""

import mimetypes
from pathlib import Path
from typing import Tuple, Union

import aiofiles

# Sender chunk size: 256KB
CHUNK_SIZE = 256 * 1024  # 262,144 bytes

# Receiver preallocation estimate: 64KB
NOMINAL_CHUNK_SIZE = 64 * 1024


class BytesPayload:
    """A payload already held in memory."""

    def __init__(self, data: bytes, name: str = "payload.bin",
                 mime_type: str = "application/octet-stream"):
        self.data = bytes(data)
        self.name = name
        self.mime_type = mime_type

    @property
    def size(self) -> int:
        return len(self.data)

    async def read(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]


class FilePayload:
    """A payload read from disk slice by slice."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.name = self.path.name
        self.mime_type = mimetypes.guess_type(self.name)[0] or "application/octet-stream"
        self._size = self.path.stat().st_size

    @property
    def size(self) -> int:
        return self._size

    async def read(self, offset: int, length: int) -> bytes:
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(offset)
            return await f.read(length)


Payload = Union[BytesPayload, FilePayload]


class FileChunker:
    """
    Splits a payload into fixed-size chunks for transfer.

    Features:
    - Fixed chunk size (policy constant, 256KB by default)
    - Async reads so large files never block the event loop
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def get_chunk_count(self, size: int) -> int:
        """Calculate number of chunks for a payload of given size."""
        return (size + self.chunk_size - 1) // self.chunk_size

    def get_chunk_bounds(self, chunk_index: int, size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, length) tuple
        """
        start = chunk_index * self.chunk_size
        length = min(self.chunk_size, size - start)
        return start, length

    async def read_chunk(self, payload: Payload, chunk_index: int) -> bytes:
        """
        Read one chunk of a payload.

        Raises:
            IndexError: If the index is outside the payload
        """
        size = payload.size
        if chunk_index < 0 or chunk_index >= self.get_chunk_count(size):
            raise IndexError(f"Chunk {chunk_index} out of range")

        start, length = self.get_chunk_bounds(chunk_index, size)
        return await payload.read(start, length)
