"""Centralized logging for podpilot-boot.

Every record leaves the process as one JSON object per line on stdout,
which is what the control plane's log ingestion consumes. Structured
context is passed through ``extra={...}`` and flattened into the object.

Library logging conventions still apply:
- NullHandler on the package root logger
- Handlers are only installed by configure_logging() (CLI entry point)

Non-blocking logging:
    Uses QueueHandler + QueueListener (stdlib) to decouple log emission
    from stdout I/O.  A bounded FIFO queue absorbs bursts from chatty
    children (tailscaled, model loaders); a daemon thread drains records
    to click.echo().  When the queue is full, records are dropped instead
    of stalling the event loop.

Output format:
    {"timestamp": "...", "level": "INFO", "logger": "podpilot_boot.apps",
     "message": "...", "service": "comfyui", "stream": "stderr", "pid": 42}
"""

import contextlib
import json
import logging
import logging.handlers
import queue
from datetime import UTC, datetime
from typing import Any

import click

LIBRARY_LOGGER_NAME: str = "podpilot_boot"
SERVICE_LOGGER_NAME: str = f"{LIBRARY_LOGGER_NAME}.services"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Bounded queue capacity -- large enough to absorb a burst of model-loading
# output, small enough to bound memory if stdout is blocked.
_QUEUE_CAPACITY = 8192

# LogRecord attributes that are never structured context
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys() | {"message", "asctime", "taskName"}
)

# Our severity names (as used in LOG_LEVEL) mapped to stdlib levels
LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class JsonLinesFormatter(logging.Formatter):
    """Render a record as a single-line JSON object with flat fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload["exception_type"] = type(record.exc_info[1]).__name__
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class _ClickHandler(logging.Handler):
    """Target handler: writes JSON lines to stdout via click.echo.

    Runs on the QueueListener's daemon thread, never on the event loop.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = JsonLinesFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record))
        except BlockingIOError:
            pass  # Stdout buffer full -- silently drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller.

    Records are enqueued via put_nowait() into a bounded FIFO.  A
    QueueListener daemon thread drains them to _ClickHandler.
    """

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue, no pickle needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        # stop() flushes everything still queued before the thread exits
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name."""
    return logging.getLogger(name)


def get_service_logger(service: str) -> logging.Logger:
    """Logger that carries the output of a supervised child process."""
    return logging.getLogger(f"{SERVICE_LOGGER_NAME}.{service}")


def parse_level(level: int | str) -> int:
    """Resolve ``debug``/``info``/``warn``/``error`` (or a stdlib name/int) to a level."""
    if isinstance(level, int):
        return level
    normalized = level.strip().lower()
    if normalized in LEVELS:
        return LEVELS[normalized]
    resolved = logging.getLevelNamesMapping().get(normalized.upper())
    if resolved is None:
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(*, level: int | str = logging.INFO) -> None:
    """Install the JSON-lines stdout handler (idempotent) and set the threshold."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())
    lib_logger.setLevel(parse_level(level))


def shutdown_logging() -> None:
    """Flush queued records before the process exits."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    for handler in list(lib_logger.handlers):
        if isinstance(handler, _NonBlockingHandler):
            lib_logger.removeHandler(handler)
            handler.close()
