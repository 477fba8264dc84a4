"""
Reducers Module

Purpose:
    Associative aggregation of index values. One reducer is fixed per
    index instance.

Key Features:
    - Reducer base class: lift, combine, reduce, identity
    - Built-ins named after CouchDB's reduce functions: _sum, _count, _stats

Contract:
    reduce([]) is the identity and combine is associative. The index
    splits and recombines ranges freely across levels and queries, so a
    non-associative combine breaks level conservation.
"""

from functools import reduce as _fold
from numbers import Number
from typing import Any, Dict, Iterable

from .errors import ConfigError


class Reducer:
    """
    Base reducer

    Subclasses implement identity() and combine(); lift() maps a raw
    inserted value to its aggregate form.
    """

    name = "custom"

    def identity(self) -> Any:
        raise NotImplementedError

    def combine(self, a: Any, b: Any) -> Any:
        raise NotImplementedError

    def lift(self, value: Any) -> Any:
        return value

    def reduce(self, values: Iterable[Any]) -> Any:
        return _fold(self.combine, values, self.identity())

    def __repr__(self):
        return f"{type(self).__name__}()"


class SumReducer(Reducer):
    """Numeric sum, the default"""

    name = "_sum"

    def identity(self):
        return 0

    def combine(self, a, b):
        return a + b

    def lift(self, value):
        if isinstance(value, bool) or not isinstance(value, Number):
            raise TypeError(f"_sum needs numeric values, got {type(value).__name__}")
        return value


class CountReducer(SumReducer):
    """Counts inserts; the inserted value is ignored"""

    name = "_count"

    def lift(self, value):
        return 1


class StatsReducer(Reducer):
    """sum, count, min, max and sum of squares of numeric values"""

    name = "_stats"

    def identity(self) -> Dict[str, Any]:
        return {"sum": 0, "count": 0, "min": None, "max": None, "sumsqr": 0}

    def lift(self, value):
        if isinstance(value, bool) or not isinstance(value, Number):
            raise TypeError(f"_stats needs numeric values, got {type(value).__name__}")
        return {"sum": value, "count": 1, "min": value, "max": value, "sumsqr": value * value}

    def combine(self, a, b):
        return {
            "sum": a["sum"] + b["sum"],
            "count": a["count"] + b["count"],
            "min": _pick(min, a["min"], b["min"]),
            "max": _pick(max, a["max"], b["max"]),
            "sumsqr": a["sumsqr"] + b["sumsqr"],
        }


def _pick(fn, a, b):
    if a is None:
        return b
    if b is None:
        return a
    return fn(a, b)


BUILTIN_REDUCERS = {
    SumReducer.name: SumReducer,
    CountReducer.name: CountReducer,
    StatsReducer.name: StatsReducer,
}


def get_reducer(reducer=None) -> Reducer:
    """
    Resolve a reducer instance

    Args:
        reducer: Reducer instance, built-in name, or None for _sum

    Raises:
        ConfigError: Unknown built-in name
    """
    if reducer is None:
        return SumReducer()
    if isinstance(reducer, Reducer):
        return reducer
    try:
        return BUILTIN_REDUCERS[reducer]()
    except (KeyError, TypeError):
        raise ConfigError(
            f"Unknown reducer {reducer!r}; expected one of {sorted(BUILTIN_REDUCERS)}"
        ) from None
