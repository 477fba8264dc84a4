"""
Level addressing over a store transaction

Every index entry lives at raw key [level(1)][encoded key], so each level
is a contiguous slice of the store and the minimum sentinel of level L is
the single byte L. Range results are always filtered to the requested
level, so a selector that resolves into a neighbouring level never leaks
its entries.
"""

from collections import namedtuple
from typing import Any, List, Optional, Union

from . import codec
from .errors import ConfigError
from .store import KEYSPACE_BEGIN, KEYSPACE_END, KeySelector, Transaction

MAX_LEVEL = 0xFE

Entry = namedtuple('Entry', ['key', 'value'])


class Selector:
    """KeySelector over key tuples, bound to a level when used"""

    def __init__(self, key, or_equal: bool, offset: int):
        self.key = key
        self.or_equal = or_equal
        self.offset = offset

    @classmethod
    def first_greater_or_equal(cls, key) -> 'Selector':
        return cls(key, False, 1)

    @classmethod
    def first_greater_than(cls, key) -> 'Selector':
        return cls(key, True, 1)

    @classmethod
    def last_less_than(cls, key) -> 'Selector':
        return cls(key, False, 0)

    @classmethod
    def last_less_or_equal(cls, key) -> 'Selector':
        return cls(key, True, 0)


# Key tuple, MIN_KEY/MAX_KEY, already-encoded key bytes, or a Selector
LevelBound = Union[tuple, bytes, Selector, Any]


def level_prefix(level: int) -> bytes:
    if not 0 <= level <= MAX_LEVEL:
        raise ConfigError(f"Level must be in [0, {MAX_LEVEL}], got {level}")
    return bytes([level])


def raw_key(level: int, key) -> bytes:
    """Store key for (level, key); key may be a tuple or encoded bytes"""
    encoded = key if isinstance(key, bytes) else codec.encode(key)
    return level_prefix(level) + encoded


class LevelTransaction:
    """
    (level, key) view of a Transaction

    Reads are conflict-registering unless snapshot=True or made through
    snapshot_range()/previous()/next().
    """

    def __init__(self, tn: Transaction):
        self.tn = tn

    def _bound(self, level: int, bound: LevelBound):
        if isinstance(bound, Selector):
            return KeySelector(raw_key(level, bound.key), bound.or_equal, bound.offset)
        return raw_key(level, bound)

    def get(self, level: int, key, snapshot: bool = False) -> Optional[Any]:
        return self.tn.get(raw_key(level, key), snapshot=snapshot)

    def set(self, level: int, key, value: Any) -> None:
        self.tn.set(raw_key(level, key), value)

    def range(self, level: int, start: LevelBound, end: LevelBound, limit: int = 0,
              reverse: bool = False, snapshot: bool = False) -> List[Entry]:
        """
        Ordered scan of one level over [start, end)

        Returns:
            List of Entry(key tuple, value)
        """
        prefix = level_prefix(level)
        rows = self.tn.get_range(self._bound(level, start), self._bound(level, end),
                                 limit=limit, reverse=reverse, snapshot=snapshot)
        return [Entry(codec.decode(k[1:]), v) for k, v in rows if k[:1] == prefix]

    def snapshot_range(self, level: int, start: LevelBound, end: LevelBound,
                       limit: int = 0, reverse: bool = False) -> List[Entry]:
        return self.range(level, start, end, limit=limit, reverse=reverse, snapshot=True)

    def range_inclusive(self, level: int, start, end, snapshot: bool = False) -> List[Entry]:
        """Scan [start, end] where start and end are key tuples"""
        return self.range(level, start, codec.key_after(codec.encode(end)), snapshot=snapshot)

    def previous(self, level: int, key, snapshot: bool = True) -> Optional[Entry]:
        """Nearest entry with key < key at level, or None"""
        scan = self.snapshot_range if snapshot else self.range
        rows = scan(level, Selector.last_less_than(key), Selector.first_greater_or_equal(key), limit=1)
        return rows[0] if rows else None

    def next(self, level: int, key, snapshot: bool = True) -> Entry:
        """Nearest entry with key > key at level, or Entry(MAX_KEY, None)"""
        scan = self.snapshot_range if snapshot else self.range
        rows = scan(level, Selector.first_greater_than(key), codec.MAX_KEY, limit=1)
        return rows[0] if rows else Entry(codec.MAX_KEY, None)

    def add_read_conflict(self, level: int, start, end) -> None:
        """Fail the commit if anything in [start, end] at level is written concurrently"""
        self.tn.add_read_conflict_range(raw_key(level, start),
                                        codec.key_after(raw_key(level, end)))

    def clear_all(self) -> None:
        """Remove every key in the store"""
        self.tn.clear_range(KEYSPACE_BEGIN, KEYSPACE_END)
