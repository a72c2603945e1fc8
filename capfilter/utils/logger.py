"""Structured logging for capfilter.

structlog renders one JSON object per line on stdout. The request id bound by
RequestIdMiddleware travels in structlog's contextvars, so every line logged
while a request is in flight (proxy, allow-list load, filter pass) carries it.

configure_logging() is called once by capfilter.main at import time.
"""

import logging
import sys
import time
from typing import Any, Optional

import structlog
from structlog.types import Processor

REQUEST_ID_KEY = "request_id"


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Install the process-wide structlog configuration.

    Args:
        log_level:   DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when True, coloured console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "capfilter") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: request_id})


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars(REQUEST_ID_KEY)


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(REQUEST_ID_KEY)


class OperationTimer:
    """Times one operation and logs ``<operation>_completed`` on success.

    Completions slower than ``slow_threshold_ms`` are logged at WARNING,
    the rest at DEBUG. Failures are not logged here; the caller logs them
    with its own context and can still read ``duration_ms``.

    Extra keyword arguments are added to the completion line.
    """

    def __init__(
        self,
        operation: str,
        logger: Any,
        slow_threshold_ms: float,
        **fields: Any,
    ) -> None:
        self.operation = operation
        self.logger = logger
        self.slow_threshold_ms = slow_threshold_ms
        self.fields = fields
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def __enter__(self) -> "OperationTimer":
        self._started = time.perf_counter()
        self._stopped = None
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._stopped = time.perf_counter()
        if exc_type is not None:
            return
        duration_ms = self.duration_ms
        slow = duration_ms > self.slow_threshold_ms
        log = self.logger.warning if slow else self.logger.debug
        log(f"{self.operation}_completed", duration_ms=round(duration_ms, 3), slow=slow, **self.fields)

    @property
    def duration_ms(self) -> float:
        """Elapsed milliseconds; 0.0 before entry, running while inside the block."""
        if self._started is None:
            return 0.0
        end = self._stopped if self._stopped is not None else time.perf_counter()
        return (end - self._started) * 1000
