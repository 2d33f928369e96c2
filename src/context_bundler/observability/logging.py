"""
context-bundler — structured logging

File: src/context_bundler/observability/logging.py
Last updated: 2026-02-16

Purpose
- Route every log event of one CLI run into ``<log_dir>/<run_id>/bundler.jsonl``
  as one JSON object per line.

Pipeline
- Component code logs through ``structlog.get_logger(__name__)``; structlog
  hands the event dict to the stdlib ``context_bundler`` logger, and a
  ``structlog.stdlib.ProcessorFormatter`` on its handlers shapes and renders
  the line. Plain ``logging`` records take the same path through the
  formatter's foreign pre-chain, so both look identical on disk.
- Line shape: ``timestamp``, ``level``, ``logger``, ``message``, ``run_id``,
  the active correlation fields, then keyword arguments under ``fields``.
- Secret-looking keys and inline credentials are redacted unless
  ``observability.redact_secrets`` is false.
"""

from __future__ import annotations

import contextvars
import json
import logging
import math
import re
import threading
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Final

import structlog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
EventDict = MutableMapping[str, Any]

LOG_FILENAME: Final[str] = "bundler.jsonl"
ROOT_LOGGER_NAME: Final[str] = "context_bundler"
REDACTED: Final[str] = "***REDACTED***"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord carries; anything else on a foreign record came from ``extra=``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    {*vars(logging.makeLogRecord({})), "message", "asctime", "taskName"}
)
_EVENT_KEYS: Final[frozenset[str]] = frozenset({"event", "exception", "exc_info", "stack_info"})

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "context_bundler_correlation", default=()
)

_active_lock = threading.Lock()
_active: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingHandle:
    """Handlers installed by one ``setup_logging`` call."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    handlers: tuple[logging.Handler, ...]

    def flush(self) -> None:
        for handler in self.handlers:
            handler.flush()

    def shutdown(self) -> None:
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            handler.close()


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> LoggingHandle:
    """
    Install JSON-lines handlers for one run and point structlog at them.

    ``observability_config`` is the validated ``[observability]`` section;
    ``log_dir`` overrides its ``log_dir``. A second call replaces the handlers
    of the first.
    """
    settings = dict(observability_config or {})
    run_id = run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    level = _log_level(settings.get("log_level", "INFO"))
    redactor = default_log_redactor if settings.get("redact_secrets", True) else _keep

    run_dir = Path(log_dir if log_dir is not None else str(settings.get("log_dir", "logs")))
    run_dir = run_dir / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / LOG_FILENAME

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[_capture_record_extras, structlog.processors.format_exc_info],
        processors=[
            _LineShaper(run_id=run_id, redactor=redactor),
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )
    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if settings.get("log_to_stdout", False):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    shutdown_logging()
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handle = LoggingHandle(
        logger=logger, run_id=run_id, log_path=log_path, handlers=tuple(handlers)
    )
    global _active
    with _active_lock:
        _active = handle
    return handle


def shutdown_logging() -> None:
    """Close the handlers installed by the last ``setup_logging`` call."""
    global _active
    with _active_lock:
        previous, _active = _active, None
    if previous is not None:
        previous.shutdown()


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """
    Bind correlation fields (``work_item_id``, ``role``, ``bundle_id``) for
    every line logged inside the block. A None or blank value unbinds the
    field until the block exits.
    """
    state = get_correlation_context()
    for key, value in fields.items():
        text = "" if value is None else str(value).strip()
        if text:
            state[key] = text
        else:
            state.pop(key, None)
    token = _correlation.set(tuple(state.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction for secret-looking keys and inline credentials."""
    return _redact(value, key=None)


class _LineShaper:
    """Final-stage processor: turn any event dict into the on-disk line shape."""

    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        self._run_id = run_id
        self._redactor = redactor

    def __call__(self, logger: object, method_name: str, event_dict: EventDict) -> EventDict:
        record: logging.LogRecord = event_dict["_record"]
        line: dict[str, JSONValue] = {
            "timestamp": _iso8601z(datetime.fromtimestamp(record.created, tz=UTC)),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redactor(_jsonable(event_dict.get("event")))),
            "run_id": self._run_id,
        }
        line.update(sorted(get_correlation_context().items()))

        fields = {
            key: _jsonable(value)
            for key, value in event_dict.items()
            if key not in _EVENT_KEYS and not key.startswith("_")
        }
        if fields:
            line["fields"] = self._redactor(fields)
        if event_dict.get("exception"):
            line["exception"] = _as_text(self._redactor(str(event_dict["exception"])))
        return line


def _capture_record_extras(logger: object, method_name: str, event_dict: EventDict) -> EventDict:
    """Foreign-record pre-chain step: lift ``extra=`` attributes and exc_info into the event."""
    record: logging.LogRecord = event_dict["_record"]
    for key, value in vars(record).items():
        if key not in _RECORD_ATTRIBUTES and not key.startswith("_"):
            event_dict.setdefault(key, value)
    if record.exc_info and "exc_info" not in event_dict:
        event_dict["exc_info"] = record.exc_info
    return event_dict


def _keep(value: JSONValue) -> JSONValue:
    return value


def _log_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return level


def _iso8601z(moment: datetime) -> str:
    aware = moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment.astimezone(UTC)
    return aware.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, datetime):
        return _iso8601z(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    return str(value)


def _redact(value: JSONValue, *, key: str | None) -> JSONValue:
    if key is not None and any(term in key.lower() for term in _SENSITIVE_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [_redact(item, key=None) for item in value]
    if isinstance(value, dict):
        return {name: _redact(item, key=name) for name, item in value.items()}
    return value


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LOG_FILENAME",
    "LogRedactor",
    "LoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
