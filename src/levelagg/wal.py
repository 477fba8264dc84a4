"""
Write-Ahead Log (WAL) Module

Purpose:
    Makes MemoryStore commits survive a restart by logging each committed
    write batch before it is applied to the in-memory table.

Key Features:
    - Append-only log file
    - One record per committed transaction, so a batch is recovered
      entirely or not at all
    - CRC32 checksums for corruption detection
    - SET and CLEAR (range) operations
    - JSON value encoding

File Format:
    Each record: [version(8)][op_count(4)][payload_size(4)][payload][checksum(4)]

    - version: uint64 commit version of the transaction
    - op_count: uint32 number of operations in the payload
    - payload_size: uint32 length of the payload in bytes
    - checksum: uint32 (CRC32 of all preceding fields)

    Payload operations:
        SET:   [0x01][key_size(4)][key][value_size(4)][value JSON]
        CLEAR: [0x02][begin_size(4)][begin][end_size(4)][end]
"""

import json
import os
import struct
from binascii import crc32
from typing import Any, Iterator, List, Tuple

from .log import get_logger

logger = get_logger("wal")

OP_SET = 0x01
OP_CLEAR = 0x02

_HEADER = '<QII'
_HEADER_SIZE = struct.calcsize(_HEADER)


class WALBatch:
    """The writes of one committed transaction, in commit order"""

    def __init__(self, version: int, ops: List[Tuple] = None):
        """
        Args:
            version: Commit version assigned by the store
            ops: List of ("set", key, value) and ("clear", begin, end)
        """
        self.version = version
        self.ops = list(ops or [])

    def add_set(self, key: bytes, value: Any) -> None:
        if not isinstance(key, bytes):
            raise TypeError("Key must be bytes")
        self.ops.append(("set", key, value))

    def add_clear(self, begin: bytes, end: bytes) -> None:
        self.ops.append(("clear", begin, end))

    def serialize(self) -> bytes:
        """
        Serialize batch to bytes with checksum

        Raises:
            TypeError: If a value is not JSON serializable
        """
        parts = []
        for op in self.ops:
            if op[0] == "set":
                _, key, value = op
                value_data = json.dumps(value).encode('utf-8')
                parts.append(struct.pack('<BI', OP_SET, len(key)) + key
                             + struct.pack('<I', len(value_data)) + value_data)
            else:
                _, begin, end = op
                parts.append(struct.pack('<BI', OP_CLEAR, len(begin)) + begin
                             + struct.pack('<I', len(end)) + end)
        payload = b''.join(parts)

        data = struct.pack(_HEADER, self.version, len(self.ops), len(payload)) + payload
        checksum = crc32(data) & 0xFFFFFFFF
        return data + struct.pack('<I', checksum)

    @classmethod
    def deserialize(cls, data: bytes, offset: int = 0) -> Tuple['WALBatch', int]:
        """
        Deserialize one batch from bytes and verify checksum

        Args:
            data: Raw bytes from WAL file
            offset: Starting position in data

        Returns:
            Tuple of (WALBatch, next_offset)

        Raises:
            ValueError: If data is truncated or checksum doesn't match
        """
        start = offset
        if len(data) < offset + _HEADER_SIZE:
            raise ValueError("Insufficient data for WAL batch header")
        version, op_count, payload_size = struct.unpack(_HEADER, data[offset:offset + _HEADER_SIZE])
        offset += _HEADER_SIZE

        end = offset + payload_size
        if len(data) < end + 4:
            raise ValueError("Insufficient data for WAL batch payload")

        stored_checksum = struct.unpack('<I', data[end:end + 4])[0]
        calculated_checksum = crc32(data[start:end]) & 0xFFFFFFFF
        if stored_checksum != calculated_checksum:
            raise ValueError(
                f"Checksum mismatch: stored={stored_checksum:08x}, "
                f"calculated={calculated_checksum:08x}"
            )

        batch = cls(version)
        pos = offset
        for _ in range(op_count):
            op, first_size = struct.unpack('<BI', data[pos:pos + 5])
            pos += 5
            first = data[pos:pos + first_size]
            pos += first_size
            second_size = struct.unpack('<I', data[pos:pos + 4])[0]
            pos += 4
            second = data[pos:pos + second_size]
            pos += second_size
            if op == OP_SET:
                batch.add_set(first, json.loads(second.decode('utf-8')))
            elif op == OP_CLEAR:
                batch.add_clear(first, second)
            else:
                raise ValueError(f"Unknown WAL operation 0x{op:02x}")
        if pos != end:
            raise ValueError("WAL batch payload size mismatch")

        return batch, end + 4

    def __len__(self):
        return len(self.ops)

    def __repr__(self):
        return f"WALBatch(version={self.version}, ops={len(self.ops)})"


class WAL:
    """
    Write-Ahead Log for durability

    Committed batches are written here before being applied to the
    store's memtable.
    """

    def __init__(self, filepath: str, sync_on_write: bool = True):
        """
        Args:
            filepath: Path to WAL file
            sync_on_write: If True, fsync after each write (slower but safer)
        """
        self.filepath = filepath
        self.sync_on_write = sync_on_write
        self._file = None
        self._open_file()

    def _open_file(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.filepath)), exist_ok=True)
        self._file = open(self.filepath, 'ab', buffering=0)

    def write(self, batch: WALBatch) -> None:
        """Append a committed batch"""
        self._file.write(batch.serialize())
        if self.sync_on_write:
            self._file.flush()
            os.fsync(self._file.fileno())

    def read_all(self) -> Iterator[WALBatch]:
        """
        Read all batches from WAL

        Yields:
            WALBatch objects in commit order

        Note:
            Stops at first corrupted batch (partial write from crash)
        """
        if not os.path.exists(self.filepath):
            return

        with open(self.filepath, 'rb') as f:
            data = f.read()

        offset = 0
        while offset < len(data):
            try:
                batch, offset = WALBatch.deserialize(data, offset)
            except ValueError as e:
                logger.warning("Stopped reading %s at offset %d: %s", self.filepath, offset, e)
                break
            yield batch

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"WAL(filepath={self.filepath!r})"
