"""
Key Codec Module

Purpose:
    Encodes key tuples into bytes whose byte order matches tuple order,
    so an ordered byte-keyed store can serve range scans over tuples.

Key Features:
    - Order-preserving encoding of None, bytes, str, int and float
    - Shorter prefix sorts before any longer tuple sharing it
    - Group prefix truncation for grouped queries
    - Stable, seed-free CRC32 key hash for level promotion

Encoding (one type code byte per component, then its payload):
    0x00  None
    0x01  bytes   escaped (0x00 -> 0x00 0xFF), terminated by 0x00
    0x02  str     UTF-8, escaped and terminated like bytes
    0x15  int     uint64 big-endian of (n + 2**63)
    0x21  float   IEEE-754 big-endian, sign-flipped

    MIN_KEY (the empty tuple) encodes to b"" and MAX_KEY to b"\\xff", so
    every user key sits strictly between them.
"""

import struct
from binascii import crc32
from typing import Optional, Tuple

NULL_CODE = 0x00
BYTES_CODE = 0x01
STRING_CODE = 0x02
INT_CODE = 0x15
FLOAT_CODE = 0x21
END_BYTE = 0xFF

_INT_OFFSET = 1 << 63
_INT_MIN = -(1 << 63)
_INT_MAX = (1 << 63) - 1


class _MaxKey:
    """Sorts after every encodable key"""

    def __repr__(self):
        return "MAX_KEY"


MIN_KEY: Tuple = ()
MAX_KEY = _MaxKey()
MAX_ENCODED = bytes([END_BYTE])

# Group key of every row when group_level == 0
UNGROUPED = None


def _escape(data: bytes) -> bytes:
    return data.replace(b'\x00', b'\x00\xff') + b'\x00'


def _encode_float(value: float) -> bytes:
    raw = bytearray(struct.pack('>d', value))
    if raw[0] & 0x80:
        # Negative: invert everything so larger magnitudes sort first
        for i in range(len(raw)):
            raw[i] ^= 0xFF
    else:
        raw[0] ^= 0x80
    return bytes(raw)


def _decode_float(raw: bytes) -> float:
    raw = bytearray(raw)
    if raw[0] & 0x80:
        raw[0] ^= 0x80
    else:
        for i in range(len(raw)):
            raw[i] ^= 0xFF
    return struct.unpack('>d', bytes(raw))[0]


def _encode_component(value) -> bytes:
    if value is None:
        return bytes([NULL_CODE])
    if isinstance(value, bytes):
        return bytes([BYTES_CODE]) + _escape(value)
    if isinstance(value, str):
        return bytes([STRING_CODE]) + _escape(value.encode('utf-8'))
    if isinstance(value, int):
        if value < _INT_MIN or value > _INT_MAX:
            raise ValueError(f"Integer key component out of 64-bit range: {value}")
        return bytes([INT_CODE]) + struct.pack('>Q', value + _INT_OFFSET)
    if isinstance(value, float):
        return bytes([FLOAT_CODE]) + _encode_float(value)
    raise TypeError(f"Unsupported key component type: {type(value).__name__}")


def encode(key) -> bytes:
    """
    Encode a key tuple (or one of the sentinels) to bytes

    Args:
        key: Tuple of components, MIN_KEY or MAX_KEY

    Returns:
        Encoded key; byte order equals tuple order
    """
    if key is MAX_KEY:
        return MAX_ENCODED
    return b''.join(_encode_component(c) for c in key)


def _read_escaped(data: bytes, offset: int) -> Tuple[bytes, int]:
    out = bytearray()
    while True:
        if offset >= len(data):
            raise ValueError("Unterminated string component in encoded key")
        byte = data[offset]
        if byte == 0x00:
            if offset + 1 < len(data) and data[offset + 1] == 0xFF:
                out.append(0x00)
                offset += 2
                continue
            return bytes(out), offset + 1
        out.append(byte)
        offset += 1


def decode(data: bytes):
    """
    Decode bytes produced by encode() back into a key tuple

    Raises:
        ValueError: If data is not a valid encoded key
    """
    if data == MAX_ENCODED:
        return MAX_KEY

    components = []
    offset = 0
    while offset < len(data):
        code = data[offset]
        offset += 1
        if code == NULL_CODE:
            components.append(None)
        elif code == BYTES_CODE:
            raw, offset = _read_escaped(data, offset)
            components.append(raw)
        elif code == STRING_CODE:
            raw, offset = _read_escaped(data, offset)
            components.append(raw.decode('utf-8'))
        elif code == INT_CODE:
            if len(data) < offset + 8:
                raise ValueError("Insufficient data for int component")
            components.append(struct.unpack('>Q', data[offset:offset + 8])[0] - _INT_OFFSET)
            offset += 8
        elif code == FLOAT_CODE:
            if len(data) < offset + 8:
                raise ValueError("Insufficient data for float component")
            components.append(_decode_float(data[offset:offset + 8]))
            offset += 8
        else:
            raise ValueError(f"Unknown type code 0x{code:02x} at offset {offset - 1}")
    return tuple(components)


def compare(a, b) -> int:
    """Return -1, 0 or 1 comparing two keys in index order"""
    ea, eb = encode(a), encode(b)
    return (ea > eb) - (ea < eb)


def group_prefix(key, group_level: int) -> Optional[Tuple]:
    """
    Truncate a key to its group key

    Args:
        key: Key tuple
        group_level: Number of leading components to keep

    Returns:
        UNGROUPED if group_level is 0, the full key if group_level is at
        least its arity, else its first group_level components
    """
    if group_level == 0:
        return UNGROUPED
    if group_level >= len(key):
        return tuple(key)
    return tuple(key[:group_level])


def prefix_end(prefix: Optional[Tuple]) -> bytes:
    """First encoded key past every key that starts with prefix"""
    if prefix is UNGROUPED:
        return MAX_ENCODED
    return encode(prefix) + MAX_ENCODED


def key_after(encoded: bytes) -> bytes:
    """Immediate successor of an encoded key in byte order"""
    return encoded + b'\x00'


def _mix32(h: int) -> int:
    # murmur3 finalizer; CRC32 is linear, so its low bits alone correlate
    # across keys that differ in a few bytes
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & 0xFFFFFFFF
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & 0xFFFFFFFF
    h ^= h >> 16
    return h


def key_hash(key) -> int:
    """Stable 32-bit hash of a key, identical across processes and runs"""
    return _mix32(crc32(encode(key)) & 0xFFFFFFFF)
