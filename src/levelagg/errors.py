"""
Errors Module

Exception hierarchy shared by the store adapter, the index maintainer
and the query engine. An empty query result is not an error: it is an
empty QueryResult.
"""


class LevelAggError(Exception):
    """Base class for every error raised by levelagg"""


class ConflictError(LevelAggError):
    """
    A transaction could not commit

    Raised by Transaction.commit() when another transaction committed a
    write intersecting one of its read ranges. MemoryStore.transact()
    retries on it and re-raises once the retry budget is spent.
    """


class InvariantViolation(LevelAggError):
    """Index structure is inconsistent (a bug, never expected at runtime)"""


class ConfigError(LevelAggError):
    """Invalid level, fanout, retry or grouping parameters"""


class KeyRangeError(LevelAggError):
    """Malformed key or query bounds"""
