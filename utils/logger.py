"""
Logging setup.

All loggers hang under the "frameforge" root so a single handler and level
apply everywhere. LOG_LEVEL picks the level; FRAMEFORGE_LOG_FILE adds a file
handler next to stdout.
"""
import logging
import os
import sys

ROOT_NAME = "frameforge"
_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_NAME)
    if root.handlers:
        return root

    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    log_file = os.getenv("FRAMEFORGE_LOG_FILE")
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """frameforge.<name> logger; handlers live on the shared root."""
    _root()
    return logging.getLogger(f"{ROOT_NAME}.{name}")


def set_level(level) -> None:
    """Override LOG_LEVEL at runtime (CLI --verbose)."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    _root().setLevel(level)
