"""
Root logger configuration for spray runs.

Level precedence: SPRAY_LOG_LEVEL (name or number), then SPRAY_DEBUG (truthy
selects DEBUG), then the caller's default.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_TRUTHY = {"1", "true", "yes", "on"}


def _as_level(value, fallback: int) -> int:
    if isinstance(value, int):
        return value
    text = "" if value is None else str(value).strip().upper()
    if not text:
        return fallback
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else fallback


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """Resolve the log level from SPRAY_LOG_LEVEL / SPRAY_DEBUG."""
    fallback = _as_level(default, logging.INFO)
    env_level = os.environ.get("SPRAY_LOG_LEVEL")
    if env_level:
        return _as_level(env_level, fallback)
    if os.environ.get("SPRAY_DEBUG", "").strip().lower() in _TRUTHY:
        return logging.DEBUG
    return fallback


def setup_logging(*, level: int, log_file: Optional[str | Path] = None) -> Optional[logging.FileHandler]:
    """
    Configure the root logger once and set ``level`` on its console handlers.

    With ``log_file`` records are also written to that file; a second call
    with the same file does not add another handler. Returns the file
    handler that was added, if any.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)

    file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    for handler in root.handlers:
        if handler not in file_handlers:
            handler.setLevel(level)

    if log_file is None:
        return None
    path = Path(log_file).resolve()
    if any(Path(h.baseFilename) == path for h in file_handlers):
        return None
    fh = logging.FileHandler(path)
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(fh)
    return fh
