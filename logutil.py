"""Categorized application logging.

Set LOG_ALL=0 to disable all categories unless explicitly enabled, LOG_ALL=1
(the default) to enable all unless explicitly disabled. Per-category env vars
override: LOG_THUMBNAIL, LOG_PREVIEW, LOG_FFMPEG, LOG_STREAM, LOG_STATS, LOG_RUNS.
"""
from __future__ import annotations

import logging
import os

_LOGGER = logging.getLogger("streamlet")


def log_enabled(cat: str) -> bool:
    try:
        base = os.environ.get("LOG_ALL", "1")
        base_on = str(base).lower() not in ("0", "false", "no")
        specific = os.environ.get(f"LOG_{cat.upper()}")
        if specific is not None:
            return str(specific).lower() in ("1", "true", "yes")
        return base_on
    except Exception:
        return True


def log(cat: str, msg: str) -> None:
    """Emit an application log line for a given category."""
    if not log_enabled(cat):
        return
    _LOGGER.info("[%s] %s", cat, msg)


__all__ = ["log", "log_enabled"]
