"""
Query Traversal Module

Purpose:
    Answers range and group aggregation queries from the leveled index
    without scanning every level-0 entry.

Paths:
    - Fast: group_level 0, no bounds -> reduce the top level
    - Ungrouped: one inclusive level-0 scan, rows returned as stored
    - General: greedy traversal that, at each step, scans the coarsest
      level whose range stays inside both the current group and the end
      bound

Traversal step (state = current key + accumulated rows of its group):
    1. group_end = last level-0 key in current's group, clipped to end
    2. current == group_end -> scan it at level 0
    3. climb while the next level has an entry at current and a group end
       beyond current; if it has no entry at current but has one further
       inside the group, step to that entry at the current level instead
    4. scan [current, target] at the chosen level; every row but the
       last is fully covered and accumulated, the last becomes current
    5. a level-0 scan reaching group_end consumes its last row too; the
       group is collated and emitted and current moves past it
    6. done once a level-0 scan reaches end

    A higher-level row covers level-0 keys up to the next key of its
    level, which is why the last row of a scan is never consumed there.
"""

from collections import namedtuple
from typing import List, Optional

from . import codec
from .collate import Row, collate
from .config import IndexConfig
from .errors import InvariantViolation
from .levels import LevelTransaction, Selector
from .log import get_logger
from .reducers import Reducer

logger = get_logger("query")

# Encoded keys >= this are user keys; the minimum sentinel is b""
FIRST_USER_KEY = codec.key_after(codec.encode(codec.MIN_KEY))

Scan = namedtuple('Scan', ['level', 'start', 'end', 'count'])


class QueryResult:
    """
    Rows of a query plus the scans that produced them

    Behaves like the list of rows: iterable, sized, indexable and equal
    to a list of (key, value) pairs.
    """

    def __init__(self, rows: Optional[List[Row]] = None, scans: Optional[List[Scan]] = None):
        self.rows: List[Row] = rows if rows is not None else []
        self.scans: List[Scan] = scans if scans is not None else []

    def levels_used(self) -> List[int]:
        return sorted({scan.level for scan in self.scans})

    def __iter__(self):
        return iter(self.rows)

    def __len__(self):
        return len(self.rows)

    def __getitem__(self, index):
        return self.rows[index]

    def __eq__(self, other):
        if isinstance(other, QueryResult):
            return self.rows == other.rows
        if isinstance(other, list):
            return self.rows == other
        return NotImplemented

    def __repr__(self):
        return f"QueryResult(rows={self.rows!r}, scans={len(self.scans)})"


def _same(a, b) -> bool:
    return codec.encode(a) == codec.encode(b)


def _group_limit(key, group_level: int) -> bytes:
    """First encoded key past the group of key"""
    if group_level > len(key):
        # Shorter than the group level: longer keys extending it are other groups
        return codec.key_after(codec.encode(key))
    return codec.prefix_end(codec.group_prefix(key, group_level))


class QueryEngine:
    """Runs queries inside a caller-provided LevelTransaction"""

    def __init__(self, config: IndexConfig, reducer: Reducer):
        self.config = config
        self.reducer = reducer

    def execute(self, lt: LevelTransaction, start_key=None, end_key=None,
                group_level: int = 0, ungrouped: bool = False) -> QueryResult:
        """
        Args:
            lt: Level view of the query's transaction
            start_key: Inclusive lower bound, None for the first key
            end_key: Inclusive upper bound, None for the last key
            group_level: Leading key components to group by
            ungrouped: Return level-0 rows without reducing

        Returns:
            QueryResult. The unbounded total is always one row (the reducer
            identity on an empty index); other paths return no rows when no
            stored key lies within the bounds
        """
        result = QueryResult()
        if group_level == 0 and start_key is None and end_key is None and not ungrouped:
            return self._total(lt, result)

        start = self._resolve_start(lt, start_key)
        end = self._resolve_end(lt, end_key)
        if start is None or end is None or codec.encode(start) > codec.encode(end):
            return result

        if ungrouped:
            rows = lt.range_inclusive(0, start, end)
            result.scans.append(Scan(0, start, end, len(rows)))
            result.rows = [Row(key, value) for key, value in rows]
            return result

        self._traverse(lt, start, end, group_level, result)
        return result

    # -------------------- Bounds --------------------

    def _resolve_start(self, lt: LevelTransaction, start_key):
        begin = (Selector.first_greater_or_equal(start_key) if start_key is not None
                 else FIRST_USER_KEY)
        rows = lt.range(0, begin, codec.MAX_KEY, limit=1)
        return rows[0].key if rows else None

    def _resolve_end(self, lt: LevelTransaction, end_key):
        stop = (codec.key_after(codec.encode(end_key)) if end_key is not None
                else codec.MAX_KEY)
        rows = lt.range(0, FIRST_USER_KEY, stop, limit=1, reverse=True)
        return rows[0].key if rows else None

    # -------------------- Fast path --------------------

    def _total(self, lt: LevelTransaction, result: QueryResult) -> QueryResult:
        # The top level always holds its sentinel, so an empty index reduces to identity
        top = self.config.max_levels
        rows = lt.range(top, codec.MIN_KEY, codec.MAX_KEY)
        result.scans.append(Scan(top, codec.MIN_KEY, rows[-1].key, len(rows)))
        result.rows.append(Row(codec.UNGROUPED, self.reducer.reduce(r.value for r in rows)))
        return result

    # -------------------- General path --------------------

    def _group_end(self, lt: LevelTransaction, level: int, current, limit: bytes):
        """Last key at level in [current, limit), or None"""
        rows = lt.range(level, current, limit, limit=1, reverse=True)
        return rows[0].key if rows else None

    def _select(self, lt: LevelTransaction, current, group_end, limit: bytes):
        """Pick (level, target) for the next scan starting at current"""
        if _same(current, group_end):
            return 0, current

        best = (0, group_end)
        level = 0
        while level < self.config.max_levels:
            up = level + 1
            if lt.get(up, current) is not None:
                candidate = self._group_end(lt, up, current, limit)
                if candidate is None or _same(candidate, current):
                    break
                best = (up, candidate)
                level = up
                continue

            # Not tall enough here; walk to the next taller key if it is in the group
            neighbor = lt.range(up, Selector.first_greater_than(current), limit, limit=1)
            if neighbor:
                best = (level, neighbor[0].key)
            break
        return best

    def _traverse(self, lt: LevelTransaction, start, end, group_level: int,
                  result: QueryResult) -> None:
        end_limit = codec.key_after(codec.encode(end))
        current = start
        acc = []
        steps = 0

        while True:
            steps += 1
            if steps > self.config.max_traversal_steps:
                raise InvariantViolation(
                    f"Traversal did not reach {end!r} within {self.config.max_traversal_steps} "
                    f"steps (stuck at {current!r})"
                )

            limit = min(_group_limit(current, group_level), end_limit)
            group_end = self._group_end(lt, 0, current, limit)
            if group_end is None:
                raise InvariantViolation(f"Level-0 key {current!r} vanished during traversal")

            level, target = self._select(lt, current, group_end, limit)
            rows = lt.range_inclusive(level, current, target)
            result.scans.append(Scan(level, current, target, len(rows)))
            logger.debug("scan level=%d %r..%r rows=%d", level, current, target, len(rows))

            if not rows or not _same(rows[0].key, current) or not _same(rows[-1].key, target):
                raise InvariantViolation(
                    f"Scan at level {level} over {current!r}..{target!r} returned "
                    f"unexpected bounds"
                )

            if level == 0 and _same(target, group_end):
                acc.extend(rows)
                result.rows.extend(collate(acc, group_level, self.reducer))
                acc = []
                if _same(target, end):
                    return
                following = lt.range(0, Selector.first_greater_than(target), end_limit, limit=1)
                if not following:
                    raise InvariantViolation(f"No level-0 key after {target!r} before {end!r}")
                current = following[0].key
            else:
                if len(rows) < 2:
                    raise InvariantViolation(
                        f"Traversal made no progress at level {level} from {current!r}"
                    )
                acc.extend(rows[:-1])
                current = target
