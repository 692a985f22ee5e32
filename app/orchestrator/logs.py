# orchestrator/logs.py
from __future__ import annotations
import logging
import sys

FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """One stdout handler on the root logger. Safe to call more than once."""
    global _configured

    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(FORMAT))
    root.addHandler(handler)
    _configured = True

    logging.getLogger("urllib3").setLevel(logging.WARNING)
