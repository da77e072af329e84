"""Process-wide logger for tasksync.

Text mode prints ``time LEVEL message`` lines for humans; JSON mode prints
one object per line with the task/issue fields promoted to top-level keys so
CI can grep a run by ``task_id`` or ``operation``. Error text passes through
``redact`` before it is written, so tokens never reach either stream.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from .errors import redact

_STDLIB_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Promoted ahead of free-form extras in JSON output.
_FIELD_ORDER = ("operation", "task_id", "issue_number", "file_path", "dry_run", "duration_ms", "error")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _level(name: str) -> int:
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else logging.INFO


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        fields = {k: v for k, v in vars(record).items() if k not in _STDLIB_ATTRS and not k.startswith("_")}
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update((key, fields.pop(key)) for key in _FIELD_ORDER if key in fields)
        entry.update(fields)
        return json.dumps(entry, default=str)


def _signature(level: int, message: str, fields: Mapping[str, Any]) -> tuple[Any, ...]:
    return (level, message, tuple(sorted((k, repr(v)) for k, v in fields.items())))


def _describe_task(action: str, task_id: str, issue_number: int | None, dry_run: bool) -> str:
    parts = [f"task {action} {task_id}"]
    if issue_number:
        parts.append(f"#{issue_number}")
    if dry_run:
        parts.append("[DRY]")
    return " ".join(parts)


class StructuredLogger:
    """Wrapper around one stdlib logger bound to stdout.

    In JSON mode an entry identical to the previous one is dropped; retries
    and rate-limit waits otherwise repeat the same line many times.
    """

    def __init__(self, name: str = "tasksync", json_logging: bool = False, level: str = "INFO") -> None:
        self._logger = logging.getLogger(name)
        self._logger.setLevel(_level(level))
        self._logger.handlers.clear()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter() if json_logging else logging.Formatter(_TEXT_FORMAT))
        self._logger.addHandler(handler)
        self._logger.propagate = False
        self._collapse_repeats = json_logging
        self._previous: tuple[Any, ...] | None = None

    def _write(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if self._collapse_repeats:
            current = _signature(level, message, fields)
            if current == self._previous:
                return
            self._previous = current
        self._logger.log(level, message, extra=fields)

    def log_operation(self, operation: str, **kw: Any) -> None:
        self._write(logging.INFO, f"Operation: {operation}", {"operation": operation, **kw})

    def log_task_action(
        self,
        action: str,
        task_id: str,
        issue_number: int | None = None,
        dry_run: bool = False,
        **kw: Any,
    ) -> None:
        fields: dict[str, Any] = {"operation": f"task_{action}", "task_id": task_id, "dry_run": dry_run, **kw}
        if issue_number:
            fields["issue_number"] = issue_number
        self._write(logging.INFO, _describe_task(action, task_id, issue_number, dry_run), fields)

    def log_request(self, method: str, path: str, status: int | None, duration_ms: float) -> None:
        """One GitHub API round trip, at debug level."""
        fields = {"operation": "api_request", "method": method, "path": path, "status": status}
        fields["duration_ms"] = round(duration_ms, 2)
        self._write(logging.DEBUG, f"{method} {path} -> {status if status is not None else 'error'}", fields)

    def log_performance(self, operation: str, duration_ms: float, **kw: Any) -> None:
        fields = {"operation": operation, "duration_ms": round(duration_ms, 2), **kw}
        self._write(logging.INFO, f"Performance: {operation} completed in {duration_ms:.2f}ms", fields)

    def log_error(self, message: str, error: str | None = None, **kw: Any) -> None:
        fields = dict(kw)
        if error:
            fields["error"] = redact(error)
        self._logger.error(redact(message), extra=fields)

    def debug(self, message: str, **kw: Any) -> None:
        self._logger.debug(message, extra=kw)

    def info(self, message: str, **kw: Any) -> None:
        self._logger.info(message, extra=kw)

    def warning(self, message: str, **kw: Any) -> None:
        self._logger.warning(message, extra=kw)

    def error(self, message: str, **kw: Any) -> None:  # noqa: D401
        self._logger.error(redact(message), extra=kw)

    @contextmanager
    def timed_operation(self, operation: str, **kw: Any) -> Iterator[None]:  # noqa: D401
        """Log ``<operation>_start``, then the duration or the failure."""
        self.log_operation(f"{operation}_start", **kw)
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.log_error(f"operation {operation} failed", error=str(exc), **kw)
            raise
        self.log_performance(operation, (time.perf_counter() - started) * 1000, **kw)


_GLOBAL: StructuredLogger | None = None


def get_logger() -> StructuredLogger:
    global _GLOBAL  # noqa: PLW0603
    if _GLOBAL is None:
        _GLOBAL = StructuredLogger()
    return _GLOBAL


def configure_logging(json_logging: bool = False, level: str = "INFO") -> StructuredLogger:
    global _GLOBAL  # noqa: PLW0603
    _GLOBAL = StructuredLogger(json_logging=json_logging, level=level)
    return _GLOBAL


__all__ = ["JSONFormatter", "StructuredLogger", "configure_logging", "get_logger"]
