"""
Aggregation Index Module

Purpose:
    Leveled aggregation index over an ordered transactional store.
    Level 0 holds one entry per distinct key; each higher level holds a
    deterministic subset of the keys below it, and each entry stores the
    reduced value of the level below from its key up to the next key of
    its own level.

Key Features:
    - Content-addressed promotion: a key reaches level L when the low
      L * fanout_exponent bits of its key hash are zero, so the structure
      does not depend on insertion order
    - Duplicate inserts merge at level 0 and fold upward
    - One transaction per insert; all levels commit or none do
    - Grouped/range queries via QueryEngine

Insert, per level L > 0 (previous = nearest key < key at L):
    promoted     -> previous = reduce(L-1 over [previous, key))
                    key      = reduce(L-1 over [key, next))
    not promoted -> previous = combine(previous, value)
"""

from typing import Any, Iterable, List, Optional, Tuple

from . import codec
from .config import IndexConfig
from .errors import ConfigError, InvariantViolation, KeyRangeError
from .levels import Entry, LevelTransaction
from .log import get_logger
from .query import FIRST_USER_KEY, QueryEngine, QueryResult
from .reducers import Reducer, get_reducer

logger = get_logger("index")


def promotes(key, level: int, fanout_exponent: int) -> bool:
    """Whether key has its own entry at level (pure function of key and level)"""
    if level == 0:
        return True
    mask = (1 << (level * fanout_exponent)) - 1
    return codec.key_hash(key) & mask == 0


class AggregationIndex:
    """
    Leveled sum (or other reducer) index

    Usage:
        index = AggregationIndex(MemoryStore())
        index.insert((2017, 3, 1), 9)
        index.query(group_level=1)
    """

    def __init__(self, store, config: Optional[IndexConfig] = None, reducer=None):
        """
        Args:
            store: Store adapter with a transact(fn) method (e.g. MemoryStore)
            config: Level parameters; defaults to IndexConfig()
            reducer: Reducer instance or built-in name; defaults to _sum

        Raises:
            ConfigError: Invalid config, unknown reducer, or a store built
                with a different level count
        """
        self.store = store
        self.config = (config or IndexConfig()).validate()
        self.reducer: Reducer = get_reducer(reducer)
        self._engine = QueryEngine(self.config, self.reducer)
        self.store.transact(self._create_sentinels)

    # -------------------- Setup --------------------

    def _create_sentinels(self, tn) -> None:
        lt = LevelTransaction(tn)
        has_data = bool(lt.range(0, FIRST_USER_KEY, codec.MAX_KEY, limit=1))
        for level in range(self.config.max_levels + 1):
            if lt.get(level, codec.MIN_KEY) is not None:
                continue
            if has_data:
                raise ConfigError(
                    f"Level {level} is missing from a non-empty index; it was built with "
                    f"different level parameters, clear and rebuild it"
                )
            lt.set(level, codec.MIN_KEY, self.reducer.identity())

    def clear(self) -> None:
        """Remove every entry, then recreate the sentinels"""
        def _clear(tn):
            LevelTransaction(tn).clear_all()
            self._create_sentinels(tn)

        self.store.transact(_clear)
        logger.info("Index cleared")

    # -------------------- Keys --------------------

    def _normalize_key(self, key) -> Tuple:
        if not isinstance(key, (tuple, list)):
            raise KeyRangeError(f"Key must be a tuple or list, got {type(key).__name__}")
        key = tuple(key)
        if not key:
            raise KeyRangeError("Key must have at least one component")
        if self.config.key_arity is not None and len(key) != self.config.key_arity:
            raise ConfigError(
                f"Key {key!r} has arity {len(key)}, index expects {self.config.key_arity}"
            )
        codec.encode(key)  # type check components up front
        return key

    def height(self, key) -> int:
        """Highest level at which key has its own entry"""
        key = self._normalize_key(key)
        level = 0
        while level < self.config.max_levels and promotes(key, level + 1, self.config.fanout_exponent):
            level += 1
        return level

    # -------------------- Insert --------------------

    def insert(self, key, value: Any) -> None:
        """
        Add value under key, merging with any existing value

        Raises:
            ConflictError: The store exhausted its retries
            ConfigError: Key arity does not match key_arity
        """
        key = self._normalize_key(key)
        lifted = self.reducer.lift(value)
        self.store.transact(lambda tn: self._insert(LevelTransaction(tn), key, lifted))

    def insert_many(self, items: Iterable[Tuple[Any, Any]]) -> int:
        """Insert (key, value) pairs, one transaction each; returns the count"""
        count = 0
        for key, value in items:
            self.insert(key, value)
            count += 1
        return count

    def _insert(self, lt: LevelTransaction, key: Tuple, value: Any) -> None:
        reducer = self.reducer
        fanout = self.config.fanout_exponent

        existing = lt.get(0, key)
        lt.set(0, key, value if existing is None else reducer.reduce([existing, value]))

        for level in range(1, self.config.max_levels + 1):
            previous = lt.previous(level, key)
            if previous is None:
                raise InvariantViolation(f"Minimum sentinel missing at level {level}")
            # The probe was a snapshot read. A concurrent write to previous, or a
            # new key between previous and key, changes what we would write here.
            lt.add_read_conflict(level, previous.key, key)

            if promotes(key, level, fanout):
                lower = level - 1
                prev_value = reducer.reduce(e.value for e in lt.range(lower, previous.key, key))
                if prev_value != previous.value:
                    lt.set(level, previous.key, prev_value)

                following = lt.next(level, key)
                new_value = reducer.reduce(e.value for e in lt.range(lower, key, following.key))
                lt.set(level, key, new_value)
                logger.debug("promoted %r to level %d: %r (previous %r -> %r)",
                             key, level, new_value, previous.key, prev_value)
            else:
                lt.set(level, previous.key, reducer.combine(previous.value, value))

    # -------------------- Query --------------------

    def query(self, start_key=None, end_key=None, group_level: int = 0,
              ungrouped: bool = False) -> QueryResult:
        """
        Aggregate stored values

        Args:
            start_key: Inclusive lower bound key, None for unbounded
            end_key: Inclusive upper bound key, None for unbounded
            group_level: Number of leading key components to group by
            ungrouped: Return level-0 rows as stored instead of reducing

        Returns:
            QueryResult of Row(group key or None, value), ascending

        Raises:
            KeyRangeError: Malformed bounds or start_key > end_key
            ConfigError: Negative group_level, or one above key_arity
        """
        if isinstance(group_level, bool) or not isinstance(group_level, int) or group_level < 0:
            raise ConfigError(f"group_level must be an integer >= 0, got {group_level!r}")
        if self.config.key_arity is not None and group_level > self.config.key_arity:
            raise ConfigError(
                f"group_level {group_level} exceeds key arity {self.config.key_arity}"
            )
        start = self._bound_key(start_key, "start_key")
        end = self._bound_key(end_key, "end_key")
        if start is not None and end is not None and codec.encode(start) > codec.encode(end):
            raise KeyRangeError(f"start_key {start!r} is after end_key {end!r}")

        return self.store.transact(
            lambda tn: self._engine.execute(LevelTransaction(tn), start, end, group_level, ungrouped)
        )

    def _bound_key(self, key, name: str):
        if key is None:
            return None
        if not isinstance(key, (tuple, list)) or not key:
            raise KeyRangeError(f"{name} must be a non-empty tuple or list, got {key!r}")
        key = tuple(key)
        try:
            codec.encode(key)
        except (TypeError, ValueError) as e:
            raise KeyRangeError(f"Invalid {name} {key!r}: {e}") from e
        return key

    # -------------------- Inspection --------------------

    def level_entries(self, level: int) -> List[Entry]:
        """Entries stored at level, minimum sentinel excluded"""
        if not 0 <= level <= self.config.max_levels:
            raise ConfigError(f"Level must be in [0, {self.config.max_levels}], got {level}")
        return self.store.transact(
            lambda tn: LevelTransaction(tn).range(level, FIRST_USER_KEY, codec.MAX_KEY)
        )

    def level_totals(self) -> List[Any]:
        """Reduced value of every level, sentinels included"""
        def _totals(tn):
            lt = LevelTransaction(tn)
            return [self.reducer.reduce(e.value for e in lt.range(level, codec.MIN_KEY, codec.MAX_KEY))
                    for level in range(self.config.max_levels + 1)]

        return self.store.transact(_totals)

    def verify(self) -> List[Any]:
        """
        Check every level against the one below

        Checks conservation (equal totals), coverage (each entry equals the
        reduce of the level below up to the next key) and determinism
        (exactly the promoted keys are present).

        Returns:
            Per-level totals

        Raises:
            InvariantViolation: On the first inconsistency found
        """
        def _verify(tn):
            lt = LevelTransaction(tn)
            levels = [lt.range(level, codec.MIN_KEY, codec.MAX_KEY)
                      for level in range(self.config.max_levels + 1)]
            for level in range(1, len(levels)):
                self._verify_level(level, levels[level - 1], levels[level])
            return [self.reducer.reduce(e.value for e in entries) for entries in levels]

        totals = self.store.transact(_verify)
        for level, total in enumerate(totals):
            if total != totals[0]:
                raise InvariantViolation(
                    f"Level {level} total {total!r} diverges from level 0 total {totals[0]!r}"
                )
        return totals

    def _verify_level(self, level: int, lower: List[Entry], upper: List[Entry]) -> None:
        if not upper or upper[0].key != codec.MIN_KEY:
            raise InvariantViolation(f"Minimum sentinel missing at level {level}")

        fanout = self.config.fanout_exponent
        expected_keys = [e.key for e in lower
                         if e.key == codec.MIN_KEY or promotes(e.key, level, fanout)]
        actual_keys = [e.key for e in upper]
        if [codec.encode(k) for k in actual_keys] != [codec.encode(k) for k in expected_keys]:
            raise InvariantViolation(
                f"Level {level} keys do not match the keys promoted from level {level - 1}"
            )

        pos = 0
        for i, entry in enumerate(upper):
            stop = codec.encode(upper[i + 1].key) if i + 1 < len(upper) else codec.MAX_ENCODED
            covered = []
            while pos < len(lower) and codec.encode(lower[pos].key) < stop:
                covered.append(lower[pos].value)
                pos += 1
            expected = self.reducer.reduce(covered)
            if entry.value != expected:
                raise InvariantViolation(
                    f"Level {level} entry {entry.key!r} is {entry.value!r}, "
                    f"level {level - 1} covers {expected!r}"
                )
