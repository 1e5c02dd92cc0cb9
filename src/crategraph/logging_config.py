"""Logging setup for the crategraph entry points.

The library modules only create loggers. Each entry point (the command line,
the TUI and the HTTP API) installs handlers here with its own default level.
Levels resolve in precedence order:

    explicit level  >  CRATEGRAPH_LOG_LEVEL  >  the entry point's default

The TUI owns the terminal, so its records go to a file instead of stderr.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

LEVEL_ENV = "CRATEGRAPH_LOG_LEVEL"
JSON_ENV = "CRATEGRAPH_LOG_JSON"

DEFAULT_LEVELS = {
    "cli": "WARNING",
    "tui": "INFO",
    "web": "INFO",
}
TUI_LOG_FILE = "crategraph-tui.log"

HUMAN_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"

# Quiet unless running at DEBUG.
NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "markdown_it", "multipart")

# Set through ``extra=`` by the build simulator and simulate_many.
CONTEXT_FIELDS = ("packages", "resolver", "iteration", "error_code")


class JSONFormatter(logging.Formatter):
    """Format records as one JSON object per line, with simulation context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def resolve_level(entry_point: str, level: str | None = None) -> int:
    """
    Numeric level for an entry point.

    An unknown level name falls back to the entry point's default.

    Raises:
        ValueError: If ``entry_point`` isn't one of DEFAULT_LEVELS.
    """
    if entry_point not in DEFAULT_LEVELS:
        raise ValueError(f"unknown entry point: {entry_point!r}")
    default = getattr(logging, DEFAULT_LEVELS[entry_point])
    name = level or os.environ.get(LEVEL_ENV)
    if not name:
        return default
    numeric = getattr(logging, name.upper(), None)
    return numeric if isinstance(numeric, int) else default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def setup_logging(
    entry_point: str = "cli",
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger for one entry point.

    Existing root handlers are removed first, so calling this twice does not
    duplicate output.

    Args:
        entry_point: "cli", "tui" or "web"; picks the default level and,
            for the TUI, a log file.
        level: Level name; overrides CRATEGRAPH_LOG_LEVEL and the default.
        json_output: Emit JSON lines. None reads CRATEGRAPH_LOG_JSON.
        log_file: Write here instead of stderr.
    """
    numeric = resolve_level(entry_point, level)
    if json_output is None:
        json_output = _env_flag(JSON_ENV)
    if log_file is None and entry_point == "tui":
        log_file = TUI_LOG_FILE

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(numeric)

    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(HUMAN_FORMAT))
    root.addHandler(handler)

    noisy_level = logging.WARNING if numeric > logging.DEBUG else logging.NOTSET
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def reset_logging() -> None:
    """Remove all root handlers and restore the default WARNING level."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
