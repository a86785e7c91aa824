import asyncio
import logging
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from mbsniff.core.pcap import CaptureRecord, PcapStreamDemuxer
from mbsniff.transports.base import TransportInterface

logger = logging.getLogger(__name__)


class CaptureSniffer:
    """Pump chunks from a capture transport through the pcap demultiplexer.

    Each chunk is fully demultiplexed and every resulting record is handed to
    `on_record` before the next chunk is read, so records keep stream order.
    Optionally the raw stream is also written to `save_path`.
    """

    def __init__(
        self,
        transport: TransportInterface,
        on_record: Callable[[CaptureRecord], None],
        demuxer: Optional[PcapStreamDemuxer] = None,
        save_path: Optional[Union[str, Path]] = None,
    ):
        self.transport = transport
        self.on_record = on_record
        self.demuxer = demuxer or PcapStreamDemuxer()
        self.save_path = Path(save_path) if save_path else None
        self.running = False
        self.exhausted = False
        self._save_file: Optional[BinaryIO] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.save_path:
            self._save_file = open(self.save_path, "wb")
            logger.info("Saving raw capture stream to %s", self.save_path)
        await self.transport.connect()
        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Sniffer started")

    async def wait(self):
        """Wait until the source is exhausted or the sniffer is stopped."""
        if self._task:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise

    async def stop(self):
        """Stop reading; the transport itself is closed by `close()`."""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def close(self):
        try:
            await self.transport.disconnect()
        finally:
            if self._save_file:
                self._save_file.close()
                self._save_file = None
        logger.info("Sniffer stopped")

    def process_chunk(self, chunk: bytes) -> int:
        """Demultiplex one chunk and dispatch its records; returns the count."""
        if self._save_file:
            self._save_file.write(chunk)
        records = self.demuxer.feed(chunk)
        for record in records:
            try:
                self.on_record(record)
            except Exception:
                logger.exception("Error handling capture record %s", record.payload.hex())
        return len(records)

    async def _run_loop(self):
        while self.running:
            try:
                chunk = await self.transport.receive()
                if not chunk:
                    logger.warning("Capture source exhausted after %d record(s)", self.demuxer.records_emitted)
                    self.exhausted = True
                    break
                self.process_chunk(chunk)

            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                logger.error(f"Sniffer loop error: {e}")
                # Prevent tight loop on error
                try:
                    await asyncio.sleep(0.1)
                except (RuntimeError, asyncio.CancelledError):
                    break
        self.running = False
