from __future__ import annotations

import logging
from typing import Optional

from chapterflow.config.runtime import get_log_level


_LOGGER: Optional[logging.Logger] = None


def get_logger() -> logging.Logger:
    """Process-wide ``chapterflow`` logger, level from CHAPTERFLOW_LOG_LEVEL."""

    global _LOGGER
    if _LOGGER is None:
        logger = logging.getLogger("chapterflow")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
            logger.addHandler(handler)
            logger.setLevel(get_log_level())
        _LOGGER = logger
    return _LOGGER
