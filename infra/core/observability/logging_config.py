"""
Logging configuration: one setup call for every entrypoint.

``infra.main`` calls ``setup_logging`` once, before any command runs.
Modules log through ``logging.getLogger(__name__)``.  Output of
supervised processes arrives on ``infra.process.<name>`` loggers and is
shown on the console under the bare service name.

Console level precedence:
    --debug / --verbose / --quiet  >  INFRA_LOG_LEVEL  >  WARNING

INFRA_LOG_FILE adds a file handler; INFRA_LOG_FILE_LEVEL sets its level.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ENV_LEVEL = "INFRA_LOG_LEVEL"
ENV_FILE = "INFRA_LOG_FILE"
ENV_FILE_LEVEL = "INFRA_LOG_FILE_LEVEL"

PROCESS_LOGGER_PREFIX = "infra.process."

# ── Formats ─────────────────────────────────────────────────────

# (max level, format, datefmt), checked top to bottom
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d | %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
)
_CONSOLE_DEFAULT = "%(message)s"

_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d | %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO; kept at WARNING unless debugging
_NOISY_LOGGERS = ("werkzeug", "urllib3", "psutil")


class _ConsoleFormatter(logging.Formatter):
    """Show ``infra.process.nats`` as ``nats`` on the console."""

    def format(self, record: logging.LogRecord) -> str:
        if record.name.startswith(PROCESS_LOGGER_PREFIX):
            short = record.name[len(PROCESS_LOGGER_PREFIX):]
            record = logging.makeLogRecord({**record.__dict__, "name": short})
        return super().format(record)


def resolve_level(verbose: bool = False, quiet: bool = False, debug: bool = False) -> str:
    """Pick the console level from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LEVEL, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Install console (and optionally file) handlers on the root logger.

    Replaces any handlers already on the root logger, so calling it
    twice is safe.

    Args:
        level: Console level name; unknown names mean WARNING.
        log_file: Path of an optional log file.  Parent directories are
            created.
        log_file_level: Level for the file handler, defaulting to
            ``level``.
        quiet_third_party: Hold ``_NOISY_LOGGERS`` at WARNING unless the
            console is at DEBUG.
    """
    console_level = _parse_level(level)
    handlers: list[logging.Handler] = [_console_handler(console_level)]

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        handlers.append(_file_handler(Path(log_file), file_level))

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = _CONSOLE_DEFAULT, None
    for max_level, candidate, candidate_datefmt in _CONSOLE_FORMATS:
        if level <= max_level:
            fmt, datefmt = candidate, candidate_datefmt
            break

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_ConsoleFormatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: Path, level: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def _parse_level(name: str | None) -> int:
    """Level name → numeric level; anything unrecognised is WARNING."""
    numeric = logging.getLevelName(name.strip().upper()) if name else None
    return numeric if isinstance(numeric, int) else logging.WARNING
