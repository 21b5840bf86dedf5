# bindexer/log.py
"""
Logging setup: structlog on top of stdlib logging, rendered through rich.
"""
from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass

import structlog
from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING,
           "warning": logging.WARNING, "error": logging.ERROR}


def setup_logging(level: str = "info", structured: bool = False) -> None:
    """Configure structlog + stdlib logging.

    `structured=True` renders JSON lines on stdout instead of the rich console.
    """
    lvl = _LEVELS.get(level.lower(), logging.INFO)
    shared = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if structured:
        processors = [structlog.stdlib.filter_by_level, *shared,
                      structlog.stdlib.add_log_level,
                      structlog.processors.TimeStamper(fmt="iso"),
                      structlog.processors.JSONRenderer()]
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        processors = [structlog.stdlib.filter_by_level, *shared,
                      structlog.dev.ConsoleRenderer(colors=False, pad_event=40)]
        handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    handler.setLevel(lvl)
    logging.basicConfig(level=lvl, handlers=[handler], force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@dataclass(slots=True)
class _Throttle:
    count: int
    last_shown: float


class ThrottledLogger:
    """
    Rate-limits repeated diagnostics by key. The first occurrence is emitted
    immediately; later ones at most once per `interval_s`, carrying the number
    of occurrences suppressed since the last emission.
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger, interval_s: float = 5.0, clock=time.monotonic) -> None:
        self.logger = logger
        self.interval_s = interval_s
        self._clock = clock
        self._seen: dict[str, _Throttle] = {}

    def log(self, key: str, level: str, event: str, **kw) -> bool:
        now = self._clock()
        entry = self._seen.get(key)
        if entry is None:
            self._seen[key] = _Throttle(count=0, last_shown=now)
            getattr(self.logger, level)(event, **kw)
            return True
        entry.count += 1
        if now - entry.last_shown <= self.interval_s:
            return False
        getattr(self.logger, level)(event, occurrences=entry.count, window_s=self.interval_s, **kw)
        entry.count = 0
        entry.last_shown = now
        return True


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"
