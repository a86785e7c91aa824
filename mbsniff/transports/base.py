from abc import ABC, abstractmethod


class TransportInterface(ABC):
    """Source of raw capture bytes.

    `receive()` returns the next chunk, or b"" once the source is exhausted.
    Capture sources are passive: `send()` is refused.
    """

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def disconnect(self):
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        pass

    async def send(self, data: bytes):
        raise RuntimeError("Operation Forbidden in Sniffer Mode")
