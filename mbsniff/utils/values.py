"""Typed decoding of raw register bytes.

Register words arrive big-endian. A mapping entry declares the datatype and
optionally how many words make up one value; the bytes are interpreted and
scaled here before any transform runs.
"""

import json
import struct
from enum import Enum
from typing import Any, Optional


class Datatype(str, Enum):
    """Value types a register mapping can declare."""

    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    BOOL = "bool"
    STRING = "string"


_INTEGER_TYPES = {
    # datatype: (byte width, signed)
    Datatype.INT16: (2, True),
    Datatype.UINT16: (2, False),
    Datatype.INT32: (4, True),
    Datatype.UINT32: (4, False),
    Datatype.INT64: (8, True),
    Datatype.UINT64: (8, False),
}

_FLOAT_TYPES = {
    Datatype.FLOAT32: (4, ">f"),
    Datatype.FLOAT64: (8, ">d"),
}


def parse_datatype(value: Optional[str]) -> Optional[Datatype]:
    """Return the Datatype for a name, or None when it is unknown."""
    if not value:
        return None
    try:
        return Datatype(str(value).strip().lower())
    except ValueError:
        return None


def default_word_length(datatype: Optional[str]) -> int:
    """Number of 16-bit words one value occupies when the mapping is silent.

    32-bit types take 2 words and 64-bit types take 4, so an int64 or float64
    entry without an explicit `length` decodes its full width. Everything else
    takes 1 word.
    """
    dtype = parse_datatype(datatype)
    if dtype in (Datatype.INT32, Datatype.UINT32, Datatype.FLOAT32):
        return 2
    if dtype in (Datatype.INT64, Datatype.UINT64, Datatype.FLOAT64):
        return 4
    return 1


def decode_value(datatype: str, raw: bytes, length: Optional[int] = None, scale: Optional[float] = None) -> Any:
    """Decode raw big-endian register bytes into a Python value.

    Args:
        datatype: Datatype name (see Datatype); unknown names decode to hex
        raw: Raw bytes, two per register
        length: Number of words to use (default depends on datatype)
        scale: Multiplier applied to numeric results (default 1)

    Returns:
        int, float, bool or str. When fewer bytes than needed are present the
        available bytes are used instead of failing.
    """
    words = length if length else default_word_length(datatype)
    buf = bytes(raw[:words * 2])
    dtype = parse_datatype(datatype)
    factor = 1 if scale is None else scale

    if dtype in _INTEGER_TYPES:
        width, signed = _INTEGER_TYPES[dtype]
        value = int.from_bytes(buf[:width], byteorder="big", signed=signed) if buf else 0
        return value * factor if factor != 1 else value

    if dtype in _FLOAT_TYPES:
        width, fmt = _FLOAT_TYPES[dtype]
        padded = buf[:width].ljust(width, b"\x00")
        value = struct.unpack(fmt, padded)[0]
        return value * factor if factor != 1 else value

    if dtype is Datatype.BOOL:
        return any(b != 0 for b in buf)

    if dtype is Datatype.STRING:
        return buf.decode("utf-8", errors="replace")

    return buf.hex()


def format_payload(value: Any) -> str:
    """Render a (possibly transformed) value as an MQTT payload string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return str(value)
