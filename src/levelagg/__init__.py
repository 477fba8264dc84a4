"""
Leveled Aggregation Index

A deterministic, skip-list-like index of incremental aggregates layered on
an ordered transactional key-value store.

Main components:
    - codec: Order-preserving key encoding and key hashing
    - store: In-memory transactional store (Memtable + WAL)
    - AggregationIndex: Insert and query entry point
    - QueryEngine: Greedy multi-level range traversal
    - Reducers: _sum, _count, _stats
"""

from .codec import MAX_KEY, MIN_KEY, UNGROUPED
from .collate import Row
from .config import IndexConfig
from .errors import (
    ConfigError,
    ConflictError,
    InvariantViolation,
    KeyRangeError,
    LevelAggError,
)
from .index import AggregationIndex, promotes
from .query import QueryEngine, QueryResult, Scan
from .reducers import CountReducer, Reducer, StatsReducer, SumReducer, get_reducer
from .store import KeySelector, MemoryStore, Transaction

__version__ = "0.1.0"
__all__ = [
    'AggregationIndex',
    'ConfigError',
    'ConflictError',
    'CountReducer',
    'IndexConfig',
    'InvariantViolation',
    'KeyRangeError',
    'KeySelector',
    'LevelAggError',
    'MAX_KEY',
    'MIN_KEY',
    'MemoryStore',
    'QueryEngine',
    'QueryResult',
    'Reducer',
    'Row',
    'Scan',
    'StatsReducer',
    'SumReducer',
    'Transaction',
    'UNGROUPED',
    'get_reducer',
    'promotes',
]
