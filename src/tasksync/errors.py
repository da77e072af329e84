"""Error taxonomy & redaction.

One exception type per layer rather than one per HTTP status:

- ``StateError``   -> ledger misuse or malformed persisted/imported JSON
- ``TrackerError`` -> any GitHub failure, tagged with an ``ErrorKind``
- ``ParseError``   -> structural problems found by ``validate_tasks``

The reconciler switches on ``TrackerError.kind`` (or on ``ErrorInfo`` from
``classify_error``) instead of on exception classes, and ``redact`` keeps
tokens out of anything that ends up in logs or summary JSON.

Public API:
- classify_error(exc) -> ErrorInfo
- kind_for_status(status) -> ErrorKind
- redact(text) -> str
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import requests

_SENSITIVE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ghp_[A-Za-z0-9]{20,40}"),  # GitHub classic tokens
    re.compile(r"github_pat_\w{20,}"),  # GitHub fine-grained tokens
    re.compile(r"gh[osu]_[A-Za-z0-9]{20,40}"),  # OAuth / app installation tokens
    re.compile(r"(?i)bearer\s+[A-Za-z0-9_\-.]{16,}"),
]

_REDACTION_PLACEHOLDER = "<redacted>"


class ErrorKind(str, Enum):
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    BAD_REQUEST = "bad_request"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in (ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT)


_STATUS_KINDS = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.AUTH,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMIT,
}

_KIND_HINTS = {
    ErrorKind.AUTH: "GitHub authentication failed; check the token",
    ErrorKind.FORBIDDEN: "GitHub access forbidden; check repository permissions",
    ErrorKind.NOT_FOUND: "GitHub repository or resource not found",
    ErrorKind.CONFLICT: "GitHub reported a conflicting change",
    ErrorKind.VALIDATION: "GitHub rejected the payload",
    ErrorKind.BAD_REQUEST: "GitHub rejected the request as malformed",
    ErrorKind.RATE_LIMIT: "GitHub rate limit exceeded",
    ErrorKind.TRANSIENT: "GitHub or the network is temporarily unavailable",
    ErrorKind.UNKNOWN: "Unexpected GitHub API error",
}


class TaskSyncError(RuntimeError):
    """Base class for every error raised by tasksync."""


class StateError(TaskSyncError):
    """Raised for ledger misuse or malformed ledger data."""


class TrackerError(TaskSyncError):
    """Raised when the GitHub API call fails; ``kind`` drives retry decisions."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status: int | None = None,
        operation: str | None = None,
        response_text: str | None = None,
        retry_after: float | None = None,
        reset_at: float | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.operation = operation
        self.response_text = response_text
        self.retry_after = retry_after
        self.reset_at = reset_at

    @property
    def transient(self) -> bool:
        return self.kind.transient

    @property
    def hint(self) -> str:
        return _KIND_HINTS[self.kind]


class ParseError(ValueError):
    def __init__(self, message: str, *, line_number: int | None = None):
        super().__init__(message)
        self.line_number = line_number


@dataclass
class ErrorInfo:
    category: str
    message: str
    original_type: str
    transient: bool = False
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "category": self.category,
            "message": self.message,
            "original_type": self.original_type,
            "transient": self.transient,
        }
        if self.details:
            out["details"] = self.details
        return out


def kind_for_status(status: int) -> ErrorKind:
    if status in _STATUS_KINDS:
        return _STATUS_KINDS[status]
    if status >= 500:  # noqa: PLR2004
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def redact(text: str) -> str:
    """Replace anything that looks like a credential with a placeholder."""
    if not text:
        return text
    redacted = text
    for pat in _SENSITIVE_PATTERNS:
        redacted = pat.sub(_REDACTION_PLACEHOLDER, redacted)
    return redacted


def classify_error(exc: BaseException) -> ErrorInfo:
    """Best-effort classification of an exception.

    - TrackerError -> 'tracker.<kind>', transient per kind
    - StateError -> 'state'
    - ParseError -> 'parse'
    - requests connection/timeout failures -> 'network', transient
    - Fallback -> 'generic'
    """
    msg = redact(str(exc) if exc else "")
    name = exc.__class__.__name__

    if isinstance(exc, TrackerError):
        details: dict[str, Any] = {"kind": exc.kind.value}
        if exc.status is not None:
            details["status"] = exc.status
        if exc.operation:
            details["operation"] = exc.operation
        return ErrorInfo(f"tracker.{exc.kind.value}", msg, name, transient=exc.transient, details=details)
    if isinstance(exc, StateError):
        return ErrorInfo("state", msg, name)
    if isinstance(exc, ParseError):
        details = {"line_number": exc.line_number} if exc.line_number is not None else None
        return ErrorInfo("parse", msg, name, details=details)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorInfo("network", msg, name, transient=True)
    return ErrorInfo("generic", msg, name)


__all__ = [
    "ErrorKind",
    "ErrorInfo",
    "TaskSyncError",
    "StateError",
    "TrackerError",
    "ParseError",
    "classify_error",
    "kind_for_status",
    "redact",
]
