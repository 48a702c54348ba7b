from __future__ import annotations

import logging

from staffnotify.core.config import get_settings


def configure_logging() -> None:
    # Entry points call this once; basicConfig leaves existing handlers alone.
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
