"""PCAP (Packet Capture) stream demultiplexer.

The external sniffer process writes a standard libpcap stream to stdout:
a 24-byte global header followed by records, each made of a 16-byte record
header (seconds, microseconds, captured length, original length) and the
captured bytes. Stdout arrives in chunks that do not line up with records, so
the demultiplexer accumulates bytes and emits records as soon as they are
complete.

Usage:
    demuxer = PcapStreamDemuxer()
    for record in demuxer.feed(chunk):
        handle(record.payload)

Framing errors (an unknown magic number, a corrupt header) drop the whole
accumulated buffer. No resynchronisation is attempted.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)

# PCAP file format constants
PCAP_MAGIC_NUMBER = 0xA1B2C3D4
PCAP_MAGIC_NUMBER_NS = 0xA1B23C4D  # nanosecond timestamp resolution
# upper bound for a record when the global header declares no usable snaplen
PCAP_MAX_SNAPLEN = 262144

PCAP_GLOBAL_HEADER_LENGTH = 24
PCAP_RECORD_HEADER_LENGTH = 16


class CaptureFormatError(Exception):
    """The capture stream is not a pcap stream or is corrupt."""
    pass


@dataclass(frozen=True)
class CaptureRecord:
    """One timestamped raw frame taken from the capture stream."""

    timestamp_ms: int
    microseconds: int
    payload: bytes

    @property
    def timestamp(self) -> float:
        """Capture time as a Unix timestamp."""
        return self.timestamp_ms // 1000 + self.microseconds / 1_000_000


class PcapStreamDemuxer:
    """Incremental pcap parser fed with arbitrary chunks of a byte stream.

    Records are returned in stream order. Partial records at the tail of the
    buffer are kept until the next `feed()` call completes them.
    """

    def __init__(self, on_error: Optional[Callable[[CaptureFormatError], None]] = None):
        """Initialize the demultiplexer.

        Args:
            on_error: Optional callback invoked with every framing error
        """
        self.on_error = on_error
        self._buffer = bytearray()
        self._header_seen = False
        self._endian = ">"
        self._nanosecond = False
        self._snaplen = PCAP_MAX_SNAPLEN
        self.records_emitted = 0
        self.errors = 0

    @property
    def header_seen(self) -> bool:
        return self._header_seen

    @property
    def little_endian(self) -> bool:
        return self._endian == "<"

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for a complete record."""
        return len(self._buffer)

    def reset(self) -> None:
        """Forget the global header and drop any buffered bytes."""
        self._buffer.clear()
        self._header_seen = False
        self._endian = ">"
        self._nanosecond = False
        self._snaplen = PCAP_MAX_SNAPLEN

    def feed(self, chunk: bytes) -> List[CaptureRecord]:
        """Append a chunk and return every record it completes."""
        self._buffer.extend(chunk)
        logger.debug(
            "Chunk received (%d bytes, %d buffered, header seen: %s): %s",
            len(chunk), len(self._buffer), self._header_seen, chunk.hex(),
        )

        records: List[CaptureRecord] = []
        try:
            if not self._header_seen and not self._parse_global_header():
                return records
            while True:
                record = self._next_record()
                if record is None:
                    break
                records.append(record)
        except (CaptureFormatError, struct.error) as exc:
            self._fail(exc if isinstance(exc, CaptureFormatError) else CaptureFormatError(str(exc)))

        self.records_emitted += len(records)
        return records

    def _parse_global_header(self) -> bool:
        """Consume the global header; False while it is still incomplete."""
        if len(self._buffer) < PCAP_GLOBAL_HEADER_LENGTH:
            return False

        for endian in (">", "<"):
            magic = struct.unpack_from(endian + "I", self._buffer, 0)[0]
            if magic in (PCAP_MAGIC_NUMBER, PCAP_MAGIC_NUMBER_NS):
                break
        else:
            raise CaptureFormatError(
                f"pcap magic not found: {bytes(self._buffer[:4]).hex()}"
            )

        self._endian = endian
        self._nanosecond = magic == PCAP_MAGIC_NUMBER_NS
        _, _, _, _, snaplen, linktype = struct.unpack_from(endian + "HHiIII", self._buffer, 4)
        logger.debug(
            "pcap global header parsed: little_endian=%s snaplen=%d linktype=%d",
            self.little_endian, snaplen, linktype,
        )
        self._snaplen = snaplen if 0 < snaplen <= PCAP_MAX_SNAPLEN else PCAP_MAX_SNAPLEN
        del self._buffer[:PCAP_GLOBAL_HEADER_LENGTH]
        self._header_seen = True
        return True

    def _next_record(self) -> Optional[CaptureRecord]:
        if len(self._buffer) < PCAP_RECORD_HEADER_LENGTH:
            return None

        ts_sec, ts_frac, incl_len, orig_len = struct.unpack_from(self._endian + "IIII", self._buffer, 0)
        if incl_len > self._snaplen:
            raise CaptureFormatError(f"record captured length {incl_len} exceeds snaplen {self._snaplen}")
        end = PCAP_RECORD_HEADER_LENGTH + incl_len
        if len(self._buffer) < end:
            return None

        # Only incl_len bytes are present; a truncated capture yields a short payload
        payload = bytes(self._buffer[PCAP_RECORD_HEADER_LENGTH:PCAP_RECORD_HEADER_LENGTH + min(orig_len, incl_len)])
        del self._buffer[:end]

        usec = ts_frac // 1000 if self._nanosecond else ts_frac
        record = CaptureRecord(
            timestamp_ms=ts_sec * 1000 + usec // 1000,
            microseconds=usec,
            payload=payload,
        )
        logger.debug("Emitting record: %s", payload.hex())
        return record

    def _fail(self, exc: CaptureFormatError) -> None:
        self.errors += 1
        logger.error("Capture stream framing error, dropping %d buffered bytes: %s", len(self._buffer), exc)
        self.reset()
        if self.on_error:
            self.on_error(exc)
