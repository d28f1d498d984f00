"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | int = "INFO") -> None:
    # stdout carries the JSON command output, so logs go to stderr.
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level}")
        level = resolved

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_gov_indexer", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._gov_indexer = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
