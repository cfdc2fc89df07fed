"""Centralized logging for matrixci."""

from __future__ import annotations

import logging
import sys
import threading

_lock = threading.Lock()
_handler: logging.Handler | None = None


class _Formatter(logging.Formatter):
    """Format log records as ``[tag] message``, stripping the ``matrixci.`` prefix."""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if name.startswith("matrixci."):
            name = name[len("matrixci.") :]
        return f"[{name}] {super().format(record)}"


def setup_logging(verbose: bool = False) -> None:
    """Configure the ``matrixci`` logger.

    Attaches a single ``StreamHandler(sys.stderr)``; level is WARNING, or
    DEBUG when *verbose* is True. Calling again only adjusts the level.
    """
    global _handler
    logger = logging.getLogger("matrixci")
    with _lock:
        if _handler is None:
            _handler = logging.StreamHandler(sys.stderr)
            _handler.setFormatter(_Formatter("%(message)s"))
            logger.addHandler(_handler)
            logger.propagate = False
        logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
