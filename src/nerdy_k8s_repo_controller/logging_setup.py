from __future__ import annotations

import logging
import sys

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=resolved, format=LOG_FORMAT, stream=sys.stdout, force=True)
    # kubernetes' urllib3 pool is chatty at DEBUG.
    logging.getLogger("urllib3").setLevel(max(resolved, logging.INFO))
