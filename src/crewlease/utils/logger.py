from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s [%(levelname)s] {worker}%(name)s: %(message)s"


def setup_logging(level: str = "INFO", worker: str | None = None) -> None:
    """Send crewlease logs to stderr.

    Several role agents usually share one terminal, so ``worker`` (an agent
    id) is stamped on every line when given. Calling again replaces the
    previous handler.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            _FORMAT.format(worker=f"{worker} " if worker else ""),
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    logger = logging.getLogger("crewlease")
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.addHandler(handler)

    # SQL and HTTP client chatter
    for noisy in ("aiosqlite", "httpx", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
