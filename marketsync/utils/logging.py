import logging
import os
from typing import Optional


ROOT_LOGGER = "marketsync"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the ``marketsync`` namespace.

    Handlers are attached once, to the namespace root, so child loggers
    created by every module share one stream and one level.
    """
    level_str = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    if not name:
        return root
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
