import json
from dataclasses import dataclass, field
from typing import Any

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from tasksync.config import ConfigError, TrackerConfig
from tasksync.errors import ErrorKind, TrackerError
from tasksync.github_rest import GitHubTrackerClient, parse_repository

START = 1_000_000.0  # matches the fake_clock fixture


@dataclass
class _DummyResponse:
    status_code: int
    payload: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = CaseInsensitiveDict(self.headers)

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no body")
        return self.payload

    @property
    def text(self) -> str:
        if self.payload is None:
            return ""
        if isinstance(self.payload, (dict, list)):
            return json.dumps(self.payload)
        return str(self.payload)


def _quota(remaining: int = 5000, reset: float = START + 3600) -> _DummyResponse:
    return _DummyResponse(
        200, {"resources": {"core": {"limit": 5000, "remaining": remaining, "reset": reset, "used": 0}}}
    )


class _DummySession:
    """Queues responses; ``/rate_limit`` is served from its own queue."""

    def __init__(self, responses: list[Any], quotas: list[_DummyResponse] | None = None):
        self._responses = responses
        self._quotas = quotas or []
        self.request_log: list[tuple[str, str, dict[str, Any]]] = []
        self.quota_calls = 0
        self.headers: dict[str, str] = {}

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> _DummyResponse:
        if url.endswith("/rate_limit"):
            self.quota_calls += 1
            return self._quotas.pop(0) if self._quotas else _quota()
        self.request_log.append((method, url, {"headers": headers, "json": json, "params": params}))
        if not self._responses:
            raise AssertionError("No response queued for request")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _issue(number: int = 5, state: str = "open", labels: list[str] | None = None) -> dict[str, Any]:
    return {
        "id": 1000 + number,
        "number": number,
        "title": "[auth] 1: Demo",
        "body": "Body",
        "state": state,
        "labels": [{"name": name} for name in (labels or [])],
        "html_url": f"https://github.com/acme/widgets/issues/{number}",
    }


def _client(session, clock, **overrides) -> GitHubTrackerClient:
    options = dict(token="tkn", repository="acme/widgets", retry_delay_ms=0)
    options.update(overrides)
    return GitHubTrackerClient(TrackerConfig(**options), session=session, clock=clock)


def test_create_issue_posts_payload(fake_clock):
    session = _DummySession([_DummyResponse(201, _issue(321, labels=["task:1"]))])
    client = _client(session, fake_clock)

    issue = client.create_issue("[auth] 1: Demo", "Body", ["task:1"])

    assert issue.number == 321
    assert issue.labels == ["task:1"]
    assert issue.url.endswith("/issues/321")
    method, url, extra = session.request_log[0]
    assert (method, url) == ("POST", "https://api.github.com/repos/acme/widgets/issues")
    assert extra["json"] == {"title": "[auth] 1: Demo", "body": "Body", "labels": ["task:1"]}
    assert extra["headers"]["Authorization"] == "Bearer tkn"
    assert session.quota_calls == 1


def test_server_error_then_success_makes_two_calls(fake_clock):
    session = _DummySession([_DummyResponse(500, {"message": "boom"}), _DummyResponse(201, _issue())])
    client = _client(session, fake_clock, retry_delay_ms=250)

    issue = client.create_issue("t", "b")

    assert issue.number == 5
    assert len(session.request_log) == 2
    assert fake_clock.sleeps == [0.25]


def test_bad_request_is_terminal(fake_clock):
    session = _DummySession([_DummyResponse(400, {"message": "Problems parsing JSON"})])
    client = _client(session, fake_clock)

    with pytest.raises(TrackerError) as info:
        client.create_issue("t", "b")

    assert info.value.kind is ErrorKind.BAD_REQUEST
    assert info.value.status == 400
    assert info.value.operation == "create_issue"
    assert "Problems parsing JSON" in str(info.value)
    assert len(session.request_log) == 1
    assert fake_clock.sleeps == []


@pytest.mark.parametrize(
    ("status", "kind"),
    [(401, ErrorKind.AUTH), (404, ErrorKind.NOT_FOUND), (409, ErrorKind.CONFLICT), (422, ErrorKind.VALIDATION)],
)
def test_terminal_statuses_surface_after_one_attempt(fake_clock, status, kind):
    session = _DummySession([_DummyResponse(status, {"message": "nope"})])
    client = _client(session, fake_clock)

    with pytest.raises(TrackerError) as info:
        client.update_issue(7, body="x")

    assert info.value.kind is kind
    assert len(session.request_log) == 1


def test_transient_errors_exhaust_retries(fake_clock):
    session = _DummySession([_DummyResponse(503, {"message": "down"}) for _ in range(3)])
    client = _client(session, fake_clock, max_retries=2)

    with pytest.raises(TrackerError) as info:
        client.close_issue(9)

    assert info.value.kind is ErrorKind.TRANSIENT
    assert len(session.request_log) == 3


def test_network_errors_are_retried(fake_clock):
    session = _DummySession([requests.ConnectionError("reset"), _DummyResponse(200, _issue(9, "closed"))])
    client = _client(session, fake_clock)

    issue = client.close_issue(9)

    assert issue.is_closed
    assert session.request_log[1][2]["json"] == {"state": "closed"}


def test_gate_waits_for_reset_when_quota_low(fake_clock):
    session = _DummySession(
        [_DummyResponse(200, _issue())],
        quotas=[_quota(remaining=5, reset=START + 60), _quota(remaining=5000)],
    )
    client = _client(session, fake_clock, rate_limit_buffer=100)

    client.reopen_issue(5)

    assert fake_clock.sleeps == [61.0]
    assert fake_clock.now() >= START + 60
    assert session.quota_calls == 2
    assert session.request_log[0][2]["json"] == {"state": "open"}


def test_429_records_zero_quota_and_waits_for_retry_after(fake_clock):
    session = _DummySession(
        [
            _DummyResponse(429, {"message": "slow down"}, {"Retry-After": "30"}),
            _DummyResponse(201, _issue()),
        ]
    )
    client = _client(session, fake_clock)

    client.create_issue("t", "b")

    assert len(session.request_log) == 2
    assert fake_clock.sleeps == [0.0, 31.0]
    assert session.quota_calls == 2


def test_403_with_exhausted_quota_is_rate_limit(fake_clock):
    exhausted = {"X-RateLimit-Remaining": "0", "X-RateLimit-Limit": "5000", "X-RateLimit-Reset": str(START + 10)}
    session = _DummySession(
        [
            _DummyResponse(403, {"message": "API rate limit exceeded"}, exhausted),
            _DummyResponse(200, [_issue()]),
        ]
    )
    client = _client(session, fake_clock)

    issue = client.find_issue_by_label("task:1")

    assert issue is not None and issue.number == 5
    assert len(session.request_log) == 2
    assert fake_clock.sleeps[-1] == pytest.approx(11.0)


def test_plain_403_is_forbidden(fake_clock):
    session = _DummySession([_DummyResponse(403, {"message": "Resource not accessible by integration"})])
    client = _client(session, fake_clock)

    with pytest.raises(TrackerError) as info:
        client.create_issue("t", "b")

    assert info.value.kind is ErrorKind.FORBIDDEN
    assert len(session.request_log) == 1


def test_failed_quota_lookup_does_not_block(fake_clock):
    session = _DummySession(
        [_DummyResponse(200, [])],
        quotas=[_DummyResponse(500, {"message": "unavailable"})],
    )
    client = _client(session, fake_clock)

    assert client.find_issue_by_label("task:missing") is None
    assert client.quota is None
    assert fake_clock.sleeps == []


def test_response_headers_refresh_quota(fake_clock):
    headers = {
        "X-RateLimit-Limit": "5000",
        "X-RateLimit-Remaining": "4321",
        "X-RateLimit-Reset": str(START + 900),
        "X-RateLimit-Used": "679",
    }
    session = _DummySession([_DummyResponse(200, _issue(), headers)])
    client = _client(session, fake_clock)

    client.update_issue(5, title="New")

    assert client.quota is not None
    assert client.quota.remaining == 4321
    assert client.quota.used == 679


def test_find_issue_by_label_query(fake_clock):
    session = _DummySession([_DummyResponse(200, [])])
    client = _client(session, fake_clock)

    assert client.find_issue_by_label("task:2.1") is None
    _, url, extra = session.request_log[0]
    assert url.endswith("/repos/acme/widgets/issues")
    assert extra["params"] == {
        "labels": "task:2.1",
        "state": "all",
        "sort": "created",
        "direction": "desc",
        "per_page": 1,
    }


def test_update_issue_sends_only_given_fields(fake_clock):
    session = _DummySession([_DummyResponse(200, _issue(labels=["bug"]))])
    client = _client(session, fake_clock)

    issue = client.update_issue(5, title="T", labels=["bug"])

    method, url, extra = session.request_log[0]
    assert method == "PATCH"
    assert url.endswith("/repos/acme/widgets/issues/5")
    assert extra["json"] == {"title": "T", "labels": ["bug"]}
    assert issue.labels == ["bug"]


def test_test_connection_success(fake_clock):
    session = _DummySession(
        [
            _DummyResponse(200, {"login": "octocat"}),
            _DummyResponse(200, {"full_name": "acme/widgets"}),
            _DummyResponse(200, []),
        ]
    )
    report = _client(session, fake_clock).test_connection()

    assert report.success
    assert report.message == "Connected as octocat to acme/widgets"
    assert [entry[1].rsplit("/", 1)[-1] for entry in session.request_log] == ["user", "widgets", "issues"]


def test_test_connection_failure_is_reported_not_raised(fake_clock):
    session = _DummySession([_DummyResponse(401, {"message": "Bad credentials"})])
    report = _client(session, fake_clock).test_connection()

    assert not report.success
    assert "authentication failed" in report.message
    assert "Bad credentials" in report.message


@pytest.mark.parametrize("repo", ["", "acme", "acme/widgets/extra", "acme/ widgets"])
def test_malformed_repository_is_config_error(repo):
    with pytest.raises(ConfigError):
        parse_repository(repo)
    with pytest.raises(ConfigError):
        GitHubTrackerClient(TrackerConfig(token="tkn", repository=repo), session=_DummySession([]))


def test_empty_token_is_config_error():
    with pytest.raises(ConfigError, match="token"):
        GitHubTrackerClient(TrackerConfig(token="  ", repository="acme/widgets"), session=_DummySession([]))
