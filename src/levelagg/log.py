"""
Logging setup

Every module logs through a child of the "levelagg" logger. The parent
logger writes to STDERR and takes its level from LEVELAGG_LOG_LEVEL
(default WARNING).
"""

import logging
import os
import sys

ROOT_LOGGER = "levelagg"
LOG_LEVEL_ENV = "LEVELAGG_LOG_LEVEL"

_root = logging.getLogger(ROOT_LOGGER)
if not _root.handlers:
    _h = logging.StreamHandler(stream=sys.stderr)
    _h.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    _root.addHandler(_h)
_root.setLevel(os.getenv(LOG_LEVEL_ENV, "WARNING").upper())


def get_logger(name: str) -> logging.Logger:
    """Return the levelagg.<name> logger"""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
