"""Modbus RTU request decoding for passively observed traffic.

Only Write Multiple Registers (0x10) requests are decoded:

    [unit, fc, addr_hi, addr_lo, qty_hi, qty_lo, byte_count, data..., crc_lo, crc_hi]

Everything else is "not applicable" and yields None. The CRC is not checked;
frames are trusted as delivered by the capture layer.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple


WRITE_MULTIPLE_REGISTERS = 0x10

# unit id + function code + start address + quantity + byte count
_HEADER_LENGTH = 7


@dataclass(frozen=True)
class DecodedFrame:
    """A decoded Write Multiple Registers request."""
    unit_id: int
    function_code: int
    address: int   # first register written
    count: int     # quantity declared in the request
    words: Tuple[bytes, ...]  # complete 2-byte words actually present

    @property
    def values(self) -> Tuple[int, ...]:
        return tuple(struct.unpack(">H", w)[0] for w in self.words)

    def registers(self) -> Iterator[Tuple[int, int]]:
        """Yield (register address, word index) for every word present."""
        for index in range(len(self.words)):
            yield self.address + index, index

    def span(self, index: int, length: int) -> bytes:
        """Join up to `length` words starting at `index`."""
        return b"".join(self.words[index:index + max(length, 1)])


def decode_write_frame(payload: bytes) -> Optional[DecodedFrame]:
    """Decode an FC16 request, or return None if the payload is not one."""
    if len(payload) < 4:
        return None

    unit_id = payload[0]
    function_code = payload[1]
    if function_code != WRITE_MULTIPLE_REGISTERS:
        return None
    if len(payload) < _HEADER_LENGTH:
        return None

    address, count = struct.unpack(">HH", payload[2:6])

    words = []
    for i in range(count):
        offset = _HEADER_LENGTH + i * 2
        if offset + 2 > len(payload):
            break
        words.append(bytes(payload[offset:offset + 2]))

    return DecodedFrame(
        unit_id=unit_id,
        function_code=function_code,
        address=address,
        count=count,
        words=tuple(words),
    )
