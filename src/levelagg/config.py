"""
Index configuration

Level count and fanout are fixed for the lifetime of an index: changing
them changes which keys are promoted, so an existing index must be
cleared and rebuilt.
"""

import os
from typing import Optional

from .errors import ConfigError
from .levels import MAX_LEVEL

HASH_BITS = 32


class IndexConfig:
    """
    Parameters of one aggregation index

    Attributes:
        max_levels: Highest level; levels 0..max_levels exist
        fanout_exponent: Each level holds ~1/2**fanout_exponent of the keys
            of the level below
        key_arity: Required key length, or None to accept any length
        max_traversal_steps: Hard bound on query traversal iterations
    """

    DEFAULT_MAX_LEVELS = 6
    DEFAULT_FANOUT_EXPONENT = 1
    DEFAULT_MAX_TRAVERSAL_STEPS = 1_000_000

    def __init__(self, max_levels: int = DEFAULT_MAX_LEVELS,
                 fanout_exponent: int = DEFAULT_FANOUT_EXPONENT,
                 key_arity: Optional[int] = None,
                 max_traversal_steps: int = DEFAULT_MAX_TRAVERSAL_STEPS):
        self.max_levels = max_levels
        self.fanout_exponent = fanout_exponent
        self.key_arity = key_arity
        self.max_traversal_steps = max_traversal_steps

    def validate(self) -> 'IndexConfig':
        """
        Raises:
            ConfigError: If any parameter is out of range
        """
        if not isinstance(self.max_levels, int) or not 1 <= self.max_levels <= MAX_LEVEL:
            raise ConfigError(f"max_levels must be in [1, {MAX_LEVEL}], got {self.max_levels!r}")
        if not isinstance(self.fanout_exponent, int) or self.fanout_exponent < 1:
            raise ConfigError(f"fanout_exponent must be >= 1, got {self.fanout_exponent!r}")
        if self.max_levels * self.fanout_exponent > HASH_BITS:
            # The top level would need more mask bits than the key hash has
            raise ConfigError(
                f"max_levels * fanout_exponent must be <= {HASH_BITS}, "
                f"got {self.max_levels} * {self.fanout_exponent}"
            )
        if self.key_arity is not None and (not isinstance(self.key_arity, int) or self.key_arity < 1):
            raise ConfigError(f"key_arity must be None or >= 1, got {self.key_arity!r}")
        if self.max_traversal_steps < 1:
            raise ConfigError(f"max_traversal_steps must be >= 1, got {self.max_traversal_steps}")
        return self

    @classmethod
    def from_env(cls, prefix: str = "LEVELAGG_") -> 'IndexConfig':
        """Build a config from <prefix>MAX_LEVELS, FANOUT_EXPONENT and KEY_ARITY"""
        def _int(name, default):
            raw = os.getenv(prefix + name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{prefix}{name} must be an integer, got {raw!r}") from None

        return cls(
            max_levels=_int("MAX_LEVELS", cls.DEFAULT_MAX_LEVELS),
            fanout_exponent=_int("FANOUT_EXPONENT", cls.DEFAULT_FANOUT_EXPONENT),
            key_arity=_int("KEY_ARITY", None),
        ).validate()

    def __repr__(self):
        return (f"IndexConfig(max_levels={self.max_levels}, "
                f"fanout_exponent={self.fanout_exponent}, key_arity={self.key_arity})")
