import asyncio
from pathlib import Path
from typing import Iterable, Optional, Union

from .base import TransportInterface


class ReplayTransport(TransportInterface):
    """Replay a recorded capture stream in fixed-size chunks.

    Chunks come either from a pcap file or from an explicit iterable, which
    makes it easy to exercise odd chunk boundaries.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        chunks: Optional[Iterable[bytes]] = None,
        chunk_size: int = 4096,
        delay: float = 0.0,
    ):
        if (path is None) == (chunks is None):
            raise ValueError("Provide exactly one of path or chunks")
        self.path = Path(path) if path is not None else None
        self.chunk_size = chunk_size
        self.delay = delay
        self.connected = False
        self._chunks = list(chunks) if chunks is not None else None
        self._file = None

    async def connect(self):
        if self.path is not None:
            self._file = open(self.path, "rb")
        self.connected = True

    async def disconnect(self):
        self.connected = False
        if self._file:
            self._file.close()
            self._file = None

    async def receive(self) -> bytes:
        if not self.connected:
            raise RuntimeError("ReplayTransport: not connected")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._file is not None:
            return self._file.read(self.chunk_size)
        if self._chunks:
            return self._chunks.pop(0)
        return b""
