"""Logging setup for the terrapack logger hierarchy.

Modules log through ``logging.getLogger(__name__)``; setup_logging() attaches
one console handler to the ``terrapack`` root logger at startup.
"""

from __future__ import annotations

import logging

ROOT_NAME = "terrapack"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Configure the terrapack root logger once.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level.

    Returns:
        The configured root logger. Calling again only updates the level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(ROOT_NAME)
    root.setLevel(level)
    if not any(getattr(h, "_terrapack", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        handler._terrapack = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
