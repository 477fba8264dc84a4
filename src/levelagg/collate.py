"""
Row collation for grouped queries
"""

from collections import namedtuple
from typing import Iterable, List, Tuple

from .codec import encode, group_prefix
from .reducers import Reducer

Row = namedtuple('Row', ['key', 'value'])


def collate(rows: Iterable[Tuple], group_level: int, reducer: Reducer) -> List[Row]:
    """
    Group (key, value) rows by group prefix and reduce each group

    Rows must arrive in key order, so rows of one group are adjacent.

    Returns:
        One Row(group key, reduced value) per group, in key order
    """
    out: List[Row] = []
    current_group = None
    current_marker = None
    values = []
    for key, value in rows:
        group = group_prefix(key, group_level)
        # Compare encodings so 1 and 1.0 stay distinct groups
        marker = None if group is None else encode(group)
        if values and marker != current_marker:
            out.append(Row(current_group, reducer.reduce(values)))
            values = []
        current_group = group
        current_marker = marker
        values.append(value)
    if values:
        out.append(Row(current_group, reducer.reduce(values)))
    return out
