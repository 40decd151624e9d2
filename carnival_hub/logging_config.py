"""
Logging setup for processes that host the carnival core.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> int:
    """
    Configure root logging.

    Allow log level to be configured via argument or the LOG_LEVEL environment
    variable (default: INFO). Unknown level names fall back to INFO.

    Returns:
        The numeric level that was applied
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)
    return numeric_level
