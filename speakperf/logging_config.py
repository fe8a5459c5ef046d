"""Logging setup: a timestamped log file plus stderr.

stdout is left alone because the stdio transport uses it for protocol frames.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

from speakperf.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the file and stderr handlers on the ``speakperf`` logger.

    Args:
        settings: Provides ``log_level`` and ``log_dir``

    Returns:
        The configured ``speakperf`` logger
    """
    logger = logging.getLogger("speakperf")
    logger.setLevel(settings.log_level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)

    log_dir = Path(settings.log_dir).expanduser()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"mcp-server-{datetime.now():%Y%m%d-%H%M%S}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled, cannot write to {log_dir}: {e}")
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.info(f"Logging to {log_file}")

    return logger
