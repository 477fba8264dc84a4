"""
Memtable Module

Purpose:
    In-memory sorted table holding the committed state of a MemoryStore.
    Transactions read through it and apply their write batches to it on
    commit.

Key Features:
    - Sorted byte-key storage using SortedDict
    - Half-open range iteration, forward and reverse
    - Range clears
    - Efficient point lookups

Design:
    Using sortedcontainers.SortedDict for O(log n) operations with
    simple, battle-tested implementation. Values are stored as given;
    the table never copies or encodes them.
"""

from sortedcontainers import SortedDict
from typing import Any, Optional, Iterator, Tuple


class Memtable:
    """
    In-memory sorted key-value table

    Keys are raw bytes (level byte + encoded key). Not thread-safe by
    itself; MemoryStore guards it with its lock.
    """

    def __init__(self):
        self._data = SortedDict()

    def put(self, key: bytes, value: Any) -> None:
        """
        Insert or update a key-value pair

        Args:
            key: The key (must be bytes)
            value: The value, any object
        """
        if not isinstance(key, bytes):
            raise TypeError("Key must be bytes")
        self._data[key] = value

    def get(self, key: bytes) -> Optional[Any]:
        """
        Retrieve value for a key

        Returns:
            The value if key exists, None otherwise
        """
        if not isinstance(key, bytes):
            raise TypeError("Key must be bytes")
        return self._data.get(key)

    def clear_range(self, begin: bytes, end: bytes) -> int:
        """
        Remove every key in [begin, end)

        Returns:
            Number of keys removed
        """
        doomed = list(self._data.irange(begin, end, inclusive=(True, False)))
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def iter_range(self, begin: bytes, end: bytes,
                   reverse: bool = False) -> Iterator[Tuple[bytes, Any]]:
        """
        Iterate over entries in [begin, end) in sorted order

        Args:
            begin: Start of range (inclusive)
            end: End of range (exclusive)
            reverse: Yield from the end of the range backwards

        Yields:
            Tuples of (key, value)
        """
        for key in self._data.irange(begin, end, inclusive=(True, False), reverse=reverse):
            yield key, self._data[key]

    def __len__(self):
        return len(self._data)

    def __repr__(self):
        return f"Memtable(entries={len(self._data)})"
