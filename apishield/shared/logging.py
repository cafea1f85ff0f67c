"""
Logging configuration for the application.

Sets up structured logging with a consistent format.
Logging must not change program behavior.
Never logs sensitive data (unredacted bodies, secrets, raw tokens).

Diagnostic records for failed requests go through a queue so a slow
log sink never delays the response path.
"""

import logging
import queue
import sys
from dataclasses import asdict
from logging.handlers import QueueHandler, QueueListener
from typing import Optional, Sequence

from apishield.domain.entities import DiagnosticRecord

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DIAGNOSTIC_LOGGER_NAME = "apishield.diagnostics"


def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging for the application.

    Args:
        level: The log level string (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


class DiagnosticSink:
    """Fire-and-forget emitter for diagnostic records.

    Records are put on an in-memory queue by the request path and
    written to the real handlers by a background listener thread.

    Args:
        handlers: Handlers that receive the records. Defaults to the
            root logger's handlers at start time.
        logger_name: Name of the logger records are emitted on.
    """

    def __init__(
        self,
        handlers: Optional[Sequence[logging.Handler]] = None,
        logger_name: str = DIAGNOSTIC_LOGGER_NAME,
    ) -> None:
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._handlers = handlers
        self._listener: Optional[QueueListener] = None
        self._logger = logging.getLogger(logger_name)
        self._logger.propagate = False
        self._queue_handler = QueueHandler(self._queue)

    @property
    def running(self) -> bool:
        return self._listener is not None

    def start(self) -> None:
        """Attach the queue handler and start the listener. Idempotent."""
        if self._listener is not None:
            return
        handlers = self._handlers
        if handlers is None:
            handlers = logging.getLogger().handlers
        self._listener = QueueListener(
            self._queue, *handlers, respect_handler_level=True
        )
        self._listener.start()
        if self._queue_handler not in self._logger.handlers:
            self._logger.addHandler(self._queue_handler)

    def stop(self) -> None:
        """Flush queued records and stop the listener."""
        if self._listener is None:
            return
        self._logger.removeHandler(self._queue_handler)
        self._listener.stop()
        self._listener = None

    def emit(self, record: DiagnosticRecord) -> None:
        """Queue one diagnostic record. Never blocks on the handlers."""
        self._logger.error(
            "Request failed: %s %s: %s",
            record.method,
            record.path,
            record.message,
            extra={"diagnostic": asdict(record)},
        )
