"""
Clerk logging subsystem.

Every record emitted while a login, session or sync run is in flight carries
that run's context (username, session id, platform, operation and a short
correlation id) so one attempt can be followed from the session manager through
the guard into the store. Context is bound with ``LogContext`` and lives in a
ContextVar, so concurrent sessions on one event loop never see each other's
fields.

Records travel through a bounded queue to a listener thread that owns the real
handlers: console (JSON in production, colored text on a TTY otherwise) and an
optional daily-rotated JSON file. When the queue is full records are dropped
and counted rather than blocking the event loop.

Credential-shaped fields (``password``, ``new_password``...) passed through
``extra`` are masked before any handler sees them.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from clerk.core.config.config import Config

_session_context: ContextVar[Dict[str, Any]] = ContextVar("clerk_log_context", default={})

CONTEXT_FIELDS = ("username", "session_id", "platform", "component", "operation", "correlation_id")
SECRET_FIELDS = frozenset({"password", "old_password", "new_password", "confirmation", "password_hash"})
MASK = "***"
UNSET = "N/A"

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


@dataclass(frozen=True, slots=True)
class LoggerConfig:
    """Static logging settings; environment-driven values are read from Config."""

    CONSOLE_FORMAT: str = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(username)s | %(message)s"
    DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    FILE_NAME: str = "clerk.json.log"
    FILE_BACKUPS: int = 7
    QUEUE_MAX_SIZE: int = 10_000
    QUIET_LOGGERS: tuple = ("asyncio", "httpx", "httpcore", "sqlalchemy.engine", "testcontainers")

    @property
    def environment(self) -> str:
        return str(Config.ENVIRONMENT).lower()

    @property
    def level(self) -> int:
        return getattr(logging, str(Config.LOG_LEVEL).upper(), logging.INFO)

    @property
    def use_json(self) -> bool:
        if Config.LOG_JSON is None:
            return self.environment == "production"
        return bool(Config.LOG_JSON)

    @property
    def logs_dir(self) -> Path:
        return Path(Config.LOGS_DIR).resolve()


LOGGER_CONFIG = LoggerConfig()


@dataclass(slots=True)
class LoggingHealth:
    initialized: bool = False
    queue_size: int = 0
    enqueued: int = 0
    dropped: int = 0
    handler_errors: int = 0


_health = LoggingHealth()
_log_queue: Optional["queue.Queue[logging.LogRecord]"] = None
_listener: Optional[QueueListener] = None


# ============================================================================
# Filters
# ============================================================================


class ContextFilter(logging.Filter):
    """Copies the bound session context onto the record; explicit extras win."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        context = _session_context.get()
        for field in CONTEXT_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, context.get(field, UNSET))
        if record.component == UNSET:
            # clerk.modules.auth.guard -> auth
            parts = record.name.split(".")
            record.component = parts[2] if len(parts) > 3 and parts[0] == "clerk" else parts[-1]
        return True


class SecretScrubFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for field in SECRET_FIELDS:
            if getattr(record, field, None):
                setattr(record, field, MASK)
        return True


# ============================================================================
# Formatters
# ============================================================================


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[90m",
        "INFO": "\033[94m",
        "WARNING": "\033[93m",
        "ERROR": "\033[91m",
        "CRITICAL": "\033[1;91m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        levelname = record.levelname
        color = self.COLORS.get(levelname)
        if color:
            record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class JSONFormatter(logging.Formatter):
    """One JSON object per line: core fields, bound context, then ``extra``."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, UNSET):
                payload[field] = value

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


# ============================================================================
# Queue pipeline
# ============================================================================


class ClerkQueueHandler(QueueHandler):
    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            _health.dropped += 1
            return
        _health.enqueued += 1


class ClerkQueueListener(QueueListener):
    def handleError(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _health.handler_errors += 1
        sys.stderr.write(f"clerk: log handler failed for record from {record.name}\n")


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if LOGGER_CONFIG.use_json:
        handler.setFormatter(JSONFormatter())
    else:
        formatter_cls = ColoredFormatter if sys.stdout.isatty() else logging.Formatter
        handler.setFormatter(formatter_cls(LOGGER_CONFIG.CONSOLE_FORMAT, LOGGER_CONFIG.DATE_FORMAT))
    return handler


def _file_handler() -> logging.Handler:
    LOGGER_CONFIG.logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        LOGGER_CONFIG.logs_dir / LOGGER_CONFIG.FILE_NAME,
        when="midnight",
        backupCount=LOGGER_CONFIG.FILE_BACKUPS,
        encoding="utf-8",
        utc=True,
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging() -> None:
    """Route the root logger through the queue pipeline. Idempotent."""
    global _log_queue, _listener, _health

    if _health.initialized:
        return

    level = LOGGER_CONFIG.level
    sinks = [_console_handler()]
    if Config.LOG_TO_FILE:
        sinks.append(_file_handler())
    for sink in sinks:
        sink.setLevel(level)

    _health = LoggingHealth(initialized=True)
    _log_queue = queue.Queue(LOGGER_CONFIG.QUEUE_MAX_SIZE)
    _listener = ClerkQueueListener(_log_queue, *sinks, respect_handler_level=True)
    _listener.start()

    # Filters run on the emitting task, where the ContextVar is visible.
    entry = ClerkQueueHandler(_log_queue)
    entry.setLevel(level)
    entry.addFilter(ContextFilter())
    entry.addFilter(SecretScrubFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(entry)
    root.setLevel(level)
    for name in LOGGER_CONFIG.QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "environment": LOGGER_CONFIG.environment,
            "level": logging.getLevelName(level),
            "json": LOGGER_CONFIG.use_json,
            "file_sink": bool(Config.LOG_TO_FILE),
        },
    )


def shutdown_logging() -> None:
    """Drain the queue into the sinks and detach the pipeline."""
    global _log_queue, _listener

    if not _health.initialized:
        return

    if _listener is not None:
        _listener.stop()
        for sink in _listener.handlers:
            sink.flush()
            sink.close()
        _listener = None

    logging.getLogger().handlers.clear()
    _log_queue = None
    _health.initialized = False


def get_logging_health() -> LoggingHealth:
    """Snapshot of the pipeline counters."""
    return LoggingHealth(
        initialized=_health.initialized,
        queue_size=_log_queue.qsize() if _log_queue is not None else 0,
        enqueued=_health.enqueued,
        dropped=_health.dropped,
        handler_errors=_health.handler_errors,
    )


# ============================================================================
# Public API
# ============================================================================


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


def get_log_context() -> Dict[str, Any]:
    return dict(_session_context.get())


class LogContext:
    """
    Bind context fields for the duration of a block (sync or async).

    Nested contexts inherit the enclosing fields and correlation id; a fresh
    correlation id is minted only at the outermost level.

    >>> async with LogContext(username="Alice", operation="verify_credentials"):
    ...     logger.info("checking lock state")
    """

    def __init__(
        self,
        username: Optional[str] = None,
        session_id: Optional[str] = None,
        platform: Optional[str] = None,
        operation: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        outer = _session_context.get()
        bound = {
            "username": username,
            "session_id": session_id,
            "platform": platform,
            "operation": operation,
            **extra,
        }
        self.context: Dict[str, Any] = {
            **outer,
            **{key: value for key, value in bound.items() if value is not None},
            "correlation_id": correlation_id or outer.get("correlation_id") or uuid.uuid4().hex[:8],
        }
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        self._token = _session_context.set(self.context)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _session_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.__exit__(*exc_info)
