import contextvars
import json
import logging
import os
import platform
import re
import sys
import time
import warnings
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator
from uuid import uuid4

MAX_LOG_FILES = 5

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
BOT_TOKEN_RE = re.compile(r"\d{6,}:[A-Za-z0-9_-]{30,}")
TOKEN_RE = re.compile(
    r"(?i)\b(bearer|token|apikey|api_key|secret|password)\s*[:=]\s*[^\s,;]+"
)

_CYCLE_ID: contextvars.ContextVar[str] = contextvars.ContextVar("mailwatch_cycle_id", default="")


@contextmanager
def cycle_context(cycle_id: str) -> Iterator[None]:
    token = _CYCLE_ID.set(cycle_id)
    try:
        yield
    finally:
        _CYCLE_ID.reset(token)


def current_cycle_id() -> str:
    return _CYCLE_ID.get()


class CategoryFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "category"):
            record.category = "general"
        if not hasattr(record, "cycle_id"):
            record.cycle_id = current_cycle_id() or "-"
        return True


class ContextFilter(logging.Filter):
    def __init__(self, *, session_id: str, app_version: str, release_date: str) -> None:
        super().__init__()
        self._session_id = session_id
        self._app_version = app_version
        self._release_date = release_date
        self._hostname = platform.node()
        self._python = platform.python_version()
        self._pid = os.getpid()
        self._process_start = time.time()

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = self._session_id
        if not hasattr(record, "app_version"):
            record.app_version = self._app_version
        if not hasattr(record, "release_date"):
            record.release_date = self._release_date
        if not hasattr(record, "hostname"):
            record.hostname = self._hostname
        if not hasattr(record, "python_version"):
            record.python_version = self._python
        if not hasattr(record, "pid"):
            record.pid = self._pid
        if not hasattr(record, "uptime_seconds"):
            record.uptime_seconds = max(0.0, time.time() - self._process_start)
        return True


def sanitize_text(value: str) -> str:
    if not value:
        return value
    sanitized = BOT_TOKEN_RE.sub("<bot-token>", value)
    sanitized = EMAIL_RE.sub("<email>", sanitized)
    sanitized = TOKEN_RE.sub(r"\1=<redacted>", sanitized)
    return sanitized


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = sanitize_text(record.getMessage())
        record.msg = message
        record.args = ()
        return True


class SanitizingFormatter(logging.Formatter):
    def formatException(self, ei) -> str:
        return sanitize_text(super().formatException(ei))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = sanitize_text(record.getMessage())
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "timestamp": timestamp,
            "level": record.levelname,
            "category": getattr(record, "category", "general"),
            "cycle_id": getattr(record, "cycle_id", "-"),
            "logger": record.name,
            "message": message,
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
            "task": getattr(record, "taskName", None) or "",
            "session_id": getattr(record, "session_id", ""),
            "app_version": getattr(record, "app_version", ""),
            "release_date": getattr(record, "release_date", ""),
            "hostname": getattr(record, "hostname", ""),
            "python_version": getattr(record, "python_version", ""),
            "pid": getattr(record, "pid", record.process),
            "uptime_seconds": round(getattr(record, "uptime_seconds", 0.0), 3),
        }
        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False)


def _install_exception_hooks() -> None:
    logger = logging.getLogger(__name__)

    def handle_exception(exc_type, exc, tb) -> None:
        if exc_type in (KeyboardInterrupt, SystemExit):
            logger.info(
                "Shutdown requested",
                extra={"category": "shutdown"},
            )
            return
        logger.critical(
            "Unhandled exception",
            exc_info=(exc_type, exc, tb),
            extra={"category": "fatal"},
        )

    sys.excepthook = handle_exception


def _resolve_level(level: str, default: int) -> int:
    name = str(level).upper()
    return logging.getLevelNamesMapping().get(name, default)


def _prepare_handler(
    handler: logging.Handler,
    formatter: logging.Formatter,
    level: int,
    context_filter: ContextFilter,
) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.setLevel(level)
    handler.addFilter(CategoryFilter())
    handler.addFilter(RedactionFilter())
    handler.addFilter(context_filter)
    return handler


def setup_logging(
    log_file: str,
    *,
    log_level: str = "INFO",
    log_console_level: str = "INFO",
    log_console_enabled: bool = True,
    log_max_bytes: int = 5_000_000,
    log_backup_count: int = 3,
    app_version: str | None = None,
    release_date: str | None = None,
) -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        for handler in list(root_logger.handlers):
            try:
                handler.close()
            finally:
                root_logger.removeHandler(handler)
    base_path = Path(log_file)
    if not base_path.suffix:
        base_path = base_path.with_suffix(".log")
    json_path = base_path.with_suffix(".jsonl")

    session_id = uuid4().hex
    context_filter = ContextFilter(
        session_id=session_id,
        app_version=str(app_version or ""),
        release_date=str(release_date or ""),
    )

    formatter = SanitizingFormatter(
        "%(asctime)s %(levelname)s %(category)s %(cycle_id)s %(name)s "
        "%(filename)s:%(lineno)d %(message)s"
    )
    json_formatter = JsonFormatter()

    resolved_level = _resolve_level(log_level, logging.INFO)
    resolved_console_level = _resolve_level(log_console_level, logging.INFO)
    effective_backup_count = min(MAX_LOG_FILES, max(0, log_backup_count))

    handlers: list[logging.Handler] = []

    try:
        base_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _prepare_handler(
                RotatingFileHandler(
                    base_path,
                    maxBytes=log_max_bytes,
                    backupCount=effective_backup_count,
                    encoding="utf-8",
                ),
                formatter,
                resolved_level,
                context_filter,
            )
        )
        handlers.append(
            _prepare_handler(
                RotatingFileHandler(
                    json_path,
                    maxBytes=log_max_bytes,
                    backupCount=effective_backup_count,
                    encoding="utf-8",
                ),
                json_formatter,
                resolved_level,
                context_filter,
            )
        )
    except OSError as exc:
        handlers.append(
            _prepare_handler(logging.StreamHandler(), formatter, resolved_level, context_filter)
        )
        logging.getLogger(__name__).warning(
            "Failed to initialize file logging: %s",
            exc,
            extra={"category": "startup"},
        )

    if log_console_enabled:
        handlers.append(
            _prepare_handler(
                logging.StreamHandler(), formatter, resolved_console_level, context_filter
            )
        )

    root = logging.getLogger()
    root.setLevel(min(resolved_level, resolved_console_level))
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)

    warnings.simplefilter("default")
    logging.captureWarnings(True)
    _install_exception_hooks()

    logging.getLogger("aioimaplib").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "category": "startup",
            "log_file": str(base_path),
            "json_log_file": str(json_path),
            "session_id": session_id,
        },
    )
    if effective_backup_count != log_backup_count:
        logging.getLogger(__name__).warning(
            "log_backup_count capped at %s (requested %s)",
            MAX_LOG_FILES,
            log_backup_count,
        )
