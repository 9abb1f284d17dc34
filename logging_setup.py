"""
Logging configuration for the GATT server process.

One rotating log file plus stdout, both with the "time [LEVEL] message"
format. Library modules only ask for ``logging.getLogger(__name__)``; the
process entry point calls ``setup_logging()`` once.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from settings import LOG_BACKUP_COUNT, LOG_DIR, LOG_LEVEL, LOG_MAX_BYTES

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILE_NAME = "gattserver.log"

_configured = False


def setup_logging(level: Union[str, int] = LOG_LEVEL, log_dir: Optional[str] = LOG_DIR) -> logging.Logger:
    """
    Attach the file and stdout handlers to the root logger.

    The file handler is skipped (with a warning on stdout) when ``log_dir``
    is None or cannot be created, e.g. when running unprivileged.
    Calling this again only changes the level.
    """
    global _configured

    root = logging.getLogger()
    root.setLevel(_parse_level(level))
    if _configured:
        return root

    formatter = logging.Formatter(LOG_FORMAT)

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(formatter)
    root.addHandler(sh)

    if log_dir:
        try:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(
                path / LOG_FILE_NAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
            )
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError as e:
            root.warning(f"File logging disabled ({log_dir}): {e}")

    _configured = True
    return root


def _parse_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value
