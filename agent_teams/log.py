from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "WARNING") -> logging.Logger:
    """Attach a single stderr handler to the package logger."""
    logger = logging.getLogger("agent_teams")
    logger.setLevel(getattr(logging, str(level).upper(), logging.WARNING))
    if not any(getattr(h, "_agent_teams", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._agent_teams = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
