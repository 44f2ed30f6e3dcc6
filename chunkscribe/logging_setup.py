"""Process-wide logging configuration for the CLI and the server."""

from __future__ import annotations

import logging
from typing import Optional

from chunkscribe.config import LOG_LEVEL


def configure_logging(level: Optional[str] = None) -> None:
    """Install a stderr handler with a timestamped format.

    Library modules only create loggers; entry points call this once.
    httpx request lines are kept at WARNING unless DEBUG is asked for.
    """
    resolved = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if resolved != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
