from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path(os.environ.get("CAPTURECTL_LOG_FILE", "logs/capturectl.log"))
ACCESS_LOG_FILE = LOG_FILE.with_name("access.log")
ACCESS_LOGGER_NAME = "capturectl.access"
LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
    "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
)
ACCESS_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 10

FALLBACK_CATEGORY = "CONFIG"
CATEGORIES = frozenset({"CAPTURE", "STOP", "REGISTRY", "WORKER", "INTERFACES", "FILES", "PERF", "CONFIG", "ERRORS"})
NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "asyncio", "httpx")

# Threads do not inherit context; capture watcher threads set their own.
_cid: contextvars.ContextVar[str] = contextvars.ContextVar("capturectl_cid", default="-")
_category: contextvars.ContextVar[str] = contextvars.ContextVar("capturectl_category", default=FALLBACK_CATEGORY)


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _cid.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id (fresh when none is given) for the enclosed block."""
    cid = correlation_id or short_uuid()
    token = _cid.set(cid)
    try:
        yield cid
    finally:
        _cid.reset(token)


@contextlib.contextmanager
def log_context(category: Optional[str] = None, correlation_id: Optional[str] = None) -> Iterator[None]:
    category_token = None
    if category is not None:
        category_token = _category.set(category if category in CATEGORIES else FALLBACK_CATEGORY)
    try:
        if correlation_id is None:
            yield
        else:
            with correlation_context(correlation_id):
                yield
    finally:
        if category_token is not None:
            _category.reset(category_token)


class ContextEnricherFilter(logging.Filter):
    """Fills category and correlation_id from context unless the call site passed them in extra."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = _category.get()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = _cid.get()
        return True


def _env_level(name: str, default: str) -> int:
    value = os.environ.get(name, "").strip().upper() or default
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else logging.getLevelName(default)


def _rotating_file(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _apply_levels(root: logging.Logger, access: logging.Logger) -> None:
    level = _env_level("CAPTURECTL_LOG_LEVEL", "INFO")
    root.setLevel(level)
    for handler in root.handlers:
        handler.setLevel(level)
    access.setLevel(_env_level("CAPTURECTL_ACCESS_LOG_LEVEL", "INFO"))
    external = _env_level("CAPTURECTL_EXTERNAL_LIB_LOG_LEVEL", "WARNING")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(external)


def setup_logging() -> None:
    """
    Install the console, rotating file and access log handlers.

    Safe to call from both the CLI and the app factory: the handlers are added
    once per process, later calls only re-read the CAPTURECTL_*_LOG_LEVEL
    environment variables.
    """
    root = logging.getLogger()
    access = logging.getLogger(ACCESS_LOGGER_NAME)
    if not getattr(root, "_capturectl_logging_installed", False):
        formatter = logging.Formatter(fmt=LOG_FORMAT)
        enricher = ContextEnricherFilter()
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        for handler in (console, _rotating_file(LOG_FILE, formatter)):
            handler.addFilter(enricher)
            root.addHandler(handler)

        access.propagate = False
        access.handlers = [_rotating_file(ACCESS_LOG_FILE, logging.Formatter(fmt=ACCESS_LOG_FORMAT))]
        root._capturectl_logging_installed = True  # type: ignore[attr-defined]
    _apply_levels(root, access)


def get_access_logger() -> logging.Logger:
    return logging.getLogger(ACCESS_LOGGER_NAME)
