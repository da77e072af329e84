"""GitHub REST tracker client.

Every request goes through the same path: a rate-limit gate that keeps the
client under the configured quota buffer, a single HTTP attempt whose failure
is turned into a ``TrackerError`` tagged with an ``ErrorKind``, and
``run_with_retries`` which repeats the attempt for transient kinds only.
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import requests

from .config import ConfigError, TrackerConfig
from .errors import ErrorKind, TrackerError, kind_for_status, redact
from .logging import get_logger
from .models import RateLimitInfo, TrackerIssue
from .retry import Clock, RetryPolicy, SystemClock, run_with_retries

USER_AGENT = "tasksync-rest/0.1.0"
API_VERSION = "2022-11-28"
HTTP_ERROR_STATUS = 400
QUOTA_MAX_AGE_SECONDS = 300.0
RESET_GRACE_SECONDS = 1.0
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60.0

_repo_re = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


@dataclass
class ConnectionReport:
    success: bool
    message: str


def parse_repository(repository: str) -> tuple[str, str]:
    """Split ``owner/name``; anything else is a configuration error."""
    value = (repository or "").strip()
    if not _repo_re.match(value):
        raise ConfigError(f"Invalid repository '{repository}': expected owner/name")
    owner, name = value.split("/", 1)
    return owner, name


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def _header_float(headers: Mapping[str, str], name: str) -> float | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class GitHubTrackerClient:
    """Issue operations against one repository with typed, bounded retries."""

    def __init__(
        self,
        config: TrackerConfig,
        *,
        session: requests.Session | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not (config.token or "").strip():
            raise ConfigError("A GitHub token is required (set tracker.token or GITHUB_TOKEN)")
        self.owner, self.name = parse_repository(config.repository)
        self.config = config
        self.base_url = config.api_url.rstrip("/")
        self._clock: Clock = clock or SystemClock()
        self._policy = RetryPolicy.from_millis(config.max_retries, config.retry_delay_ms)
        self._session = session or requests.Session()
        self._session.headers.setdefault("Authorization", f"Bearer {config.token}")
        self._session.headers.setdefault("Accept", "application/vnd.github+json")
        self._session.headers.setdefault("User-Agent", USER_AGENT)
        self._session.headers.setdefault("X-GitHub-Api-Version", API_VERSION)
        self._quota: RateLimitInfo | None = None
        self._quota_checked_at: float | None = None

    @property
    def repo(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def quota(self) -> RateLimitInfo | None:
        return self._quota

    # ---- transport ----------------------------------------------------
    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        """One HTTP attempt. Raises ``TrackerError`` on any failure."""
        url = self._url(path)
        started = time.perf_counter()
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._session.headers,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            get_logger().log_request(method, path, None, (time.perf_counter() - started) * 1000)
            raise TrackerError(
                f"GitHub API {method} {path} failed: {redact(str(exc))}",
                kind=ErrorKind.TRANSIENT,
                operation=operation,
            ) from exc
        get_logger().log_request(method, path, response.status_code, (time.perf_counter() - started) * 1000)
        self._record_quota_headers(response.headers)
        if response.status_code >= HTTP_ERROR_STATUS:
            raise self._error_from_response(response, method, path, operation)
        if not response.text:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TrackerError(
                f"GitHub API {method} {path} returned invalid JSON",
                kind=ErrorKind.UNKNOWN,
                status=response.status_code,
                operation=operation,
                response_text=redact(response.text[:500]),
            ) from exc

    def _error_from_response(
        self, response: requests.Response, method: str, path: str, operation: str
    ) -> TrackerError:
        status = response.status_code
        text = response.text or ""
        message = ""
        try:
            data = response.json()
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
        except ValueError:
            message = text[:200]
        headers = response.headers
        remaining = _header_int(headers, "X-RateLimit-Remaining")
        kind = kind_for_status(status)
        # GitHub reports an exhausted primary limit as 403, not 429
        if status == 403 and (remaining == 0 or "rate limit" in message.lower()):  # noqa: PLR2004
            kind = ErrorKind.RATE_LIMIT
        return TrackerError(
            redact(f"GitHub API {method} {path} failed with {status}: {message}".rstrip(": ")),
            kind=kind,
            status=status,
            operation=operation,
            response_text=redact(text[:500]),
            retry_after=_header_float(headers, "Retry-After"),
            reset_at=_header_float(headers, "X-RateLimit-Reset"),
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        def _attempt() -> Any:
            self._wait_for_quota()
            return self._send(method, path, operation=operation, params=params, json_body=json_body)

        return run_with_retries(
            _attempt,
            policy=self._policy,
            should_retry=lambda exc: isinstance(exc, TrackerError) and exc.transient,
            clock=self._clock,
            on_retry=self._on_retry,
        )

    # ---- rate limiting ------------------------------------------------
    def _record_quota_headers(self, headers: Mapping[str, str]) -> None:
        remaining = _header_int(headers, "X-RateLimit-Remaining")
        reset_at = _header_float(headers, "X-RateLimit-Reset")
        if remaining is None or reset_at is None:
            return
        self._quota = RateLimitInfo(
            limit=_header_int(headers, "X-RateLimit-Limit") or remaining,
            remaining=remaining,
            reset_at=reset_at,
            used=_header_int(headers, "X-RateLimit-Used") or 0,
        )
        self._quota_checked_at = self._clock.now()

    def _on_retry(self, exc: BaseException, attempt: int) -> None:  # noqa: ARG002
        if not isinstance(exc, TrackerError) or exc.kind is not ErrorKind.RATE_LIMIT:
            return
        now = self._clock.now()
        if exc.retry_after is not None:
            reset_at = now + exc.retry_after
        elif exc.reset_at is not None:
            reset_at = exc.reset_at
        else:
            reset_at = now + DEFAULT_RATE_LIMIT_WAIT_SECONDS
        limit = self._quota.limit if self._quota else 0
        self._quota = RateLimitInfo(limit=limit, remaining=0, reset_at=reset_at)
        self._quota_checked_at = now

    def _refresh_quota(self) -> None:
        try:
            self.get_rate_limit()
        except TrackerError as exc:
            get_logger().warning(
                f"Rate limit lookup failed, continuing without it: {exc}",
                operation="rate_limit",
                error=str(exc),
            )
            self._quota = None
            self._quota_checked_at = self._clock.now()

    def _wait_for_quota(self) -> None:
        now = self._clock.now()
        if self._quota_checked_at is None or now - self._quota_checked_at > QUOTA_MAX_AGE_SECONDS:
            self._refresh_quota()
        quota = self._quota
        if quota is None:
            return
        if quota.remaining > 0 and quota.remaining >= self.config.rate_limit_buffer:
            return
        wait = max(0.0, quota.reset_at - self._clock.now()) + RESET_GRACE_SECONDS
        get_logger().warning(
            f"Rate limit low ({quota.remaining} remaining), waiting {wait:.0f}s for reset",
            operation="rate_limit_wait",
            remaining=quota.remaining,
            wait_seconds=round(wait, 2),
        )
        self._clock.sleep(wait)
        self._refresh_quota()

    def get_rate_limit(self) -> RateLimitInfo:
        """Query ``/rate_limit`` directly; this endpoint does not consume quota."""
        data = self._send("GET", "/rate_limit", operation="get_rate_limit")
        core: Any = None
        if isinstance(data, dict):
            resources = data.get("resources")
            core = resources.get("core") if isinstance(resources, dict) else None
            core = core or data.get("rate")
        if not isinstance(core, dict):
            raise TrackerError(
                "GitHub rate limit response missing core quota",
                kind=ErrorKind.UNKNOWN,
                operation="get_rate_limit",
            )
        info = RateLimitInfo(
            limit=int(core.get("limit") or 0),
            remaining=int(core.get("remaining") or 0),
            reset_at=float(core.get("reset") or 0),
            used=int(core.get("used") or 0),
        )
        self._quota = info
        self._quota_checked_at = self._clock.now()
        return info

    # ---- issue operations --------------------------------------------
    def create_issue(
        self, title: str, body: str, labels: Iterable[str] | None = None
    ) -> TrackerIssue:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = list(labels)
        data = self._request(
            "POST", f"/repos/{self.repo}/issues", operation="create_issue", json_body=payload
        )
        return TrackerIssue.from_api(data if isinstance(data, dict) else {})

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        labels: Iterable[str] | None = None,
        state: str | None = None,
    ) -> TrackerIssue:
        payload: dict[str, Any] = {}
        if title is not None:
            payload["title"] = title
        if body is not None:
            payload["body"] = body
        if labels is not None:
            payload["labels"] = list(labels)
        if state is not None:
            payload["state"] = state
        path = f"/repos/{self.repo}/issues/{number}"
        if payload:
            data = self._request("PATCH", path, operation="update_issue", json_body=payload)
        else:
            data = self._request("GET", path, operation="get_issue")
        return TrackerIssue.from_api(data if isinstance(data, dict) else {})

    def close_issue(self, number: int) -> TrackerIssue:
        return self.update_issue(number, state="closed")

    def reopen_issue(self, number: int) -> TrackerIssue:
        return self.update_issue(number, state="open")

    def find_issue_by_label(self, label: str) -> TrackerIssue | None:
        params = {
            "labels": label,
            "state": "all",
            "sort": "created",
            "direction": "desc",
            "per_page": 1,
        }
        data = self._request(
            "GET", f"/repos/{self.repo}/issues", operation="find_issue_by_label", params=params
        )
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return TrackerIssue.from_api(data[0])
        return None

    def test_connection(self) -> ConnectionReport:
        try:
            user = self._request("GET", "/user", operation="get_user")
            repo = self._request("GET", f"/repos/{self.repo}", operation="get_repository")
            self._request(
                "GET",
                f"/repos/{self.repo}/issues",
                operation="list_issues",
                params={"state": "all", "per_page": 1},
            )
        except TrackerError as exc:
            return ConnectionReport(False, f"{exc.hint}: {exc}")
        login = user.get("login") if isinstance(user, dict) else None
        full_name = repo.get("full_name") if isinstance(repo, dict) else None
        return ConnectionReport(
            True, f"Connected as {login or 'unknown'} to {full_name or self.repo}"
        )


__all__ = [
    "ConnectionReport",
    "GitHubTrackerClient",
    "parse_repository",
    "USER_AGENT",
]
