"""
Store Module

Purpose:
    Ordered, transactional key-value store consumed by the aggregation
    index. MemoryStore keeps committed state in a Memtable and, when given
    a path, logs every commit to a WAL.

Key Features:
    - Key selectors (first >=, first >, last <, last <=) as range bounds
    - Buffered writes with read-your-writes inside a transaction
    - Optimistic concurrency: read-conflict ranges validated at commit
    - Snapshot reads that register no conflicts
    - transact(fn): retry loop with capped, jittered exponential backoff

Design:
    A transaction starts at the store's current commit version. Each
    commit publishes its write ranges under that commit's version; a
    transaction whose read ranges intersect any write range published
    after its read version fails with ConflictError. Read-only
    transactions are validated the same way, so a successful transaction
    observed one consistent view.
"""

import heapq
import random
import threading
import time
from collections import Counter
from sortedcontainers import SortedDict
from typing import Any, Callable, List, Optional, Tuple, Union

from .errors import ConfigError, ConflictError
from .log import get_logger
from .memtable import Memtable
from .wal import WAL, WALBatch

logger = get_logger("store")

KEYSPACE_BEGIN = b''
KEYSPACE_END = b'\xff'

_MISSING = object()


def _key_after(key: bytes) -> bytes:
    return key + b'\x00'


class KeySelector:
    """
    Range bound resolved against the nearest existing key

    offset 1 selects the first key >= key (> key with or_equal), offset 0
    the last key < key (<= key with or_equal). A selector with no match
    resolves to the matching end of the keyspace.
    """

    def __init__(self, key: bytes, or_equal: bool, offset: int):
        if not isinstance(key, bytes):
            raise TypeError("Selector key must be bytes")
        if offset not in (0, 1):
            raise ValueError("Selector offset must be 0 or 1")
        self.key = key
        self.or_equal = or_equal
        self.offset = offset

    @classmethod
    def first_greater_or_equal(cls, key: bytes) -> 'KeySelector':
        return cls(key, False, 1)

    @classmethod
    def first_greater_than(cls, key: bytes) -> 'KeySelector':
        return cls(key, True, 1)

    @classmethod
    def last_less_than(cls, key: bytes) -> 'KeySelector':
        return cls(key, False, 0)

    @classmethod
    def last_less_or_equal(cls, key: bytes) -> 'KeySelector':
        return cls(key, True, 0)

    def __eq__(self, other):
        if not isinstance(other, KeySelector):
            return NotImplemented
        return (self.key, self.or_equal, self.offset) == (other.key, other.or_equal, other.offset)

    def __repr__(self):
        names = {(False, 1): "first_greater_or_equal", (True, 1): "first_greater_than",
                 (False, 0): "last_less_than", (True, 0): "last_less_or_equal"}
        return f"KeySelector.{names[(self.or_equal, self.offset)]}({self.key!r})"


Bound = Union[bytes, KeySelector]


def _intersects(a: Tuple[bytes, bytes], b: Tuple[bytes, bytes]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


class Transaction:
    """
    One unit of work against a MemoryStore

    Writes are buffered until commit(). Reads see committed state merged
    with the transaction's own writes and clears.
    """

    def __init__(self, store: 'MemoryStore', read_version: int):
        self._store = store
        self.read_version = read_version
        self._writes = SortedDict()
        self._cleared: List[Tuple[bytes, bytes]] = []
        self._read_ranges: List[Tuple[bytes, bytes]] = []
        self._closed = False

    # -------------------- Reads --------------------

    def snapshot(self) -> '_SnapshotView':
        """View of this transaction whose reads record no conflicts"""
        return _SnapshotView(self)

    def _is_cleared(self, key: bytes) -> bool:
        return any(begin <= key < end for begin, end in self._cleared)

    def _read(self, begin: bytes, end: bytes, limit: int, reverse: bool) -> List[Tuple[bytes, Any]]:
        # Caller holds the store lock
        base = ((k, v) for k, v in self._store._table.iter_range(begin, end, reverse)
                if k not in self._writes and not self._is_cleared(k))
        local = ((k, self._writes[k])
                 for k in self._writes.irange(begin, end, inclusive=(True, False), reverse=reverse))
        rows = []
        for row in heapq.merge(base, local, key=lambda kv: kv[0], reverse=reverse):
            rows.append(row)
            if limit and len(rows) >= limit:
                break
        return rows

    def _resolve(self, bound: Bound) -> bytes:
        if isinstance(bound, bytes):
            return bound
        if bound.offset == 1:
            start = _key_after(bound.key) if bound.or_equal else bound.key
            rows = self._read(start, KEYSPACE_END, 1, False)
            return rows[0][0] if rows else KEYSPACE_END
        stop = _key_after(bound.key) if bound.or_equal else bound.key
        rows = self._read(KEYSPACE_BEGIN, stop, 1, True)
        return rows[0][0] if rows else KEYSPACE_BEGIN

    def get(self, key: bytes, snapshot: bool = False) -> Optional[Any]:
        """
        Point read

        Returns:
            The value, or None if the key does not exist
        """
        if not isinstance(key, bytes):
            raise TypeError("Key must be bytes")
        if not snapshot:
            self._read_ranges.append((key, _key_after(key)))

        value = self._writes.get(key, _MISSING)
        if value is not _MISSING:
            return value
        if self._is_cleared(key):
            return None
        with self._store._lock:
            return self._store._table.get(key)

    def get_range(self, begin: Bound, end: Bound, limit: int = 0,
                  reverse: bool = False, snapshot: bool = False) -> List[Tuple[bytes, Any]]:
        """
        Ordered range read over [begin, end)

        Args:
            begin: Start bound (inclusive once resolved)
            end: End bound (exclusive once resolved)
            limit: Maximum rows to return, 0 for no limit
            reverse: Return rows from the end of the range backwards
            snapshot: Do not register a read-conflict range

        Returns:
            List of (key, value) tuples
        """
        with self._store._lock:
            lo = self._resolve(begin)
            hi = self._resolve(end)
            rows = self._read(lo, hi, limit, reverse) if lo < hi else []

        if not snapshot:
            conflict_lo, conflict_hi = lo, hi
            if limit and len(rows) == limit:
                if reverse:
                    conflict_lo = max(conflict_lo, rows[-1][0])
                else:
                    conflict_hi = min(conflict_hi, _key_after(rows[-1][0]))
            if conflict_lo < conflict_hi:
                self._read_ranges.append((conflict_lo, conflict_hi))
            # Resolving a selector read the gap between its anchor and the key it landed on
            for bound, resolved in ((begin, lo), (end, hi)):
                if isinstance(bound, KeySelector):
                    self._read_ranges.append((min(bound.key, resolved),
                                              _key_after(max(bound.key, resolved))))
        return rows

    def add_read_conflict_range(self, begin: bytes, end: bytes) -> None:
        """Make commit fail if [begin, end) is written concurrently"""
        self._read_ranges.append((begin, end))

    # -------------------- Writes --------------------

    def set(self, key: bytes, value: Any) -> None:
        if not isinstance(key, bytes):
            raise TypeError("Key must be bytes")
        if value is None:
            raise ValueError("Value must not be None")
        self._writes[key] = value

    def clear(self, key: bytes) -> None:
        self.clear_range(key, _key_after(key))

    def clear_range(self, begin: bytes, end: bytes) -> None:
        """Remove every key in [begin, end), including this transaction's writes"""
        for key in list(self._writes.irange(begin, end, inclusive=(True, False))):
            del self._writes[key]
        self._cleared.append((begin, end))

    def write_ranges(self) -> List[Tuple[bytes, bytes]]:
        ranges = list(self._cleared)
        ranges.extend((key, _key_after(key)) for key in self._writes)
        return ranges

    def to_batch(self, version: int) -> WALBatch:
        """Writes in apply order: clears first, then surviving sets"""
        batch = WALBatch(version)
        for begin, end in self._cleared:
            batch.add_clear(begin, end)
        for key, value in self._writes.items():
            batch.add_set(key, value)
        return batch

    def has_writes(self) -> bool:
        return bool(self._writes) or bool(self._cleared)

    # -------------------- Lifecycle --------------------

    def commit(self) -> None:
        """
        Validate reads and apply buffered writes atomically

        Raises:
            ConflictError: A concurrent commit invalidated one of our reads
            ConfigError: A written value cannot be stored in the commit log
        """
        if self._closed:
            raise RuntimeError("Transaction already finished")
        try:
            self._store._commit(self)
        finally:
            self.close()

    def close(self) -> None:
        """Abandon the transaction if it was not committed"""
        if not self._closed:
            self._closed = True
            self._store._release(self)

    def __repr__(self):
        return (f"Transaction(read_version={self.read_version}, "
                f"writes={len(self._writes)}, clears={len(self._cleared)})")


class _SnapshotView:
    """Read-only facade over a transaction that skips conflict tracking"""

    def __init__(self, tn: Transaction):
        self._tn = tn

    def get(self, key: bytes) -> Optional[Any]:
        return self._tn.get(key, snapshot=True)

    def get_range(self, begin: Bound, end: Bound, limit: int = 0,
                  reverse: bool = False) -> List[Tuple[bytes, Any]]:
        return self._tn.get_range(begin, end, limit=limit, reverse=reverse, snapshot=True)


class MemoryStore:
    """
    In-memory ordered transactional store

    Usage:
        store = MemoryStore()
        store.transact(lambda tn: tn.set(b"k", 1))
        value = store.transact(lambda tn: tn.get(b"k"))
    """

    DEFAULT_MAX_RETRIES = 100
    BACKOFF_BASE = 0.001  # seconds
    BACKOFF_MAX = 0.1

    def __init__(self, wal_path: Optional[str] = None, sync_on_write: bool = True,
                 max_retries: int = DEFAULT_MAX_RETRIES):
        """
        Args:
            wal_path: Commit log path; None keeps everything in memory only
            sync_on_write: fsync the commit log after each commit
            max_retries: Conflict retries transact() attempts before giving up
        """
        if max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {max_retries}")
        self.max_retries = max_retries
        self._lock = threading.RLock()
        self._table = Memtable()
        self._version = 0
        self._history: List[Tuple[int, List[Tuple[bytes, bytes]]]] = []
        self._active = Counter()
        self._wal = None

        if wal_path is not None:
            self._wal = WAL(wal_path, sync_on_write=sync_on_write)
            self._replay()

    def _replay(self) -> None:
        count = 0
        for batch in self._wal.read_all():
            self._apply(batch)
            self._version = batch.version
            count += 1
        if count:
            logger.info("Replayed %d batches from %s (version %d)",
                        count, self._wal.filepath, self._version)

    def _apply(self, batch: WALBatch) -> None:
        for op in batch.ops:
            if op[0] == "clear":
                self._table.clear_range(op[1], op[2])
            else:
                self._table.put(op[1], op[2])

    @property
    def version(self) -> int:
        """Version of the latest commit"""
        return self._version

    def begin(self) -> Transaction:
        """Start a transaction at the current commit version"""
        with self._lock:
            tn = Transaction(self, self._version)
            self._active[tn.read_version] += 1
            return tn

    def _release(self, tn: Transaction) -> None:
        with self._lock:
            self._active[tn.read_version] -= 1
            if self._active[tn.read_version] <= 0:
                del self._active[tn.read_version]
            self._prune()

    def _prune(self) -> None:
        # History at or below the oldest active read version can no longer conflict
        if not self._active:
            self._history.clear()
            return
        oldest = min(self._active)
        drop = 0
        while drop < len(self._history) and self._history[drop][0] <= oldest:
            drop += 1
        if drop:
            del self._history[:drop]

    def _commit(self, tn: Transaction) -> None:
        with self._lock:
            for version, written in self._history:
                if version <= tn.read_version:
                    continue
                for read in tn._read_ranges:
                    if any(_intersects(read, w) for w in written):
                        raise ConflictError(
                            f"Read range {read[0]!r}..{read[1]!r} was written at version "
                            f"{version} after read version {tn.read_version}"
                        )

            if not tn.has_writes():
                return

            version = self._version + 1
            batch = tn.to_batch(version)
            if self._wal is not None:
                try:
                    self._wal.write(batch)
                except TypeError as e:
                    # Raised while serializing, before anything reaches the file
                    raise ConfigError(
                        f"Commit log stores JSON values only, cannot log this transaction: {e}"
                    ) from e
            self._apply(batch)
            self._version = version
            self._history.append((version, tn.write_ranges()))

    def transact(self, fn: Callable[[Transaction], Any]) -> Any:
        """
        Run fn inside a transaction, retrying on conflict

        Args:
            fn: Unit of work; may be called several times

        Returns:
            Whatever fn returned on the attempt that committed

        Raises:
            ConflictError: Every attempt conflicted
        """
        for attempt in range(self.max_retries + 1):
            tn = self.begin()
            try:
                result = fn(tn)
                tn.commit()
                return result
            except ConflictError as e:
                if attempt >= self.max_retries:
                    logger.warning("Giving up after %d attempts: %s", attempt + 1, e)
                    raise
                logger.debug("Retrying transaction (attempt %d): %s", attempt + 1, e)
                self._backoff(attempt)
            finally:
                tn.close()

    def _backoff(self, attempt: int) -> None:
        delay = min(self.BACKOFF_BASE * (2 ** attempt), self.BACKOFF_MAX)
        time.sleep(random.uniform(0, delay))

    def num_entries(self) -> int:
        with self._lock:
            return len(self._table)

    def close(self) -> None:
        if self._wal is not None:
            self._wal.close()
            self._wal = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"MemoryStore(entries={len(self._table)}, version={self._version})"
