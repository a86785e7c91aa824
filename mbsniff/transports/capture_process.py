import asyncio
import logging
from typing import List, Optional

from .base import TransportInterface

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class CaptureProcessTransport(TransportInterface):
    """Spawn the external sniffer and expose its stdout as a byte stream.

    stderr is forwarded line by line to the log. `disconnect()` terminates the
    process with SIGTERM and kills it if it does not exit within `grace`.
    """

    def __init__(self, binary: str, args: Optional[List[str]] = None, grace: float = 2.0):
        self.binary = binary
        self.args = list(args) if args is not None else ["--silent"]
        self.grace = grace
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    async def connect(self):
        if self.process is not None:
            return
        logger.info("Starting capture process: %s %s", self.binary, " ".join(self.args))
        self.process = await asyncio.create_subprocess_exec(
            self.binary,
            *self.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stderr_task = asyncio.create_task(self._stderr_loop())
        logger.info("Capture process started (pid %d)", self.process.pid)

    async def disconnect(self):
        proc = self.process
        if proc is None:
            return
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.grace)
            except asyncio.TimeoutError:
                logger.warning("Capture process did not exit after SIGTERM, killing it")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if self._stderr_task:
            # drain what the process wrote before exiting; wait_for cancels on timeout
            try:
                await asyncio.wait_for(self._stderr_task, timeout=self.grace)
            except asyncio.TimeoutError:
                pass
            self._stderr_task = None
        logger.info("Capture process stopped (exit code %s)", proc.returncode)

    async def receive(self) -> bytes:
        if self.process is None or self.process.stdout is None:
            raise RuntimeError("CaptureProcessTransport: not connected")
        chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
        if not chunk:
            code = await self.process.wait()
            logger.warning("Capture process exited with code %s", code)
        return chunk

    async def _stderr_loop(self):
        assert self.process is not None and self.process.stderr is not None
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            logger.info("sniffer: %s", line.decode("utf-8", errors="replace").rstrip())
