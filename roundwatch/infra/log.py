from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Process-wide logger setup; later calls only adjust the level."""
    root = logging.getLogger("roundwatch")
    if not any(getattr(h, "_roundwatch", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._roundwatch = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        root.propagate = False
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if name == "roundwatch" or name.startswith("roundwatch."):
        return logging.getLogger(name)
    return logging.getLogger(f"roundwatch.{name}")
