from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class Task:
    """Canonical in-memory representation of one checklist item.

    Rebuilt on every parse; only its fingerprint and issue number are
    persisted (see ``SyncRecord``).
    """

    id: str
    title: str
    status: TaskStatus
    file_path: str
    line_number: int
    spec_group: str
    description: str | None = None
    requirements: list[str] | None = None


@dataclass
class SyncRecord:
    task_id: str
    tracker_issue_number: int
    last_synced_at: str
    last_content_hash: str
    file_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "tracker_issue_number": self.tracker_issue_number,
            "last_synced_at": self.last_synced_at,
            "last_content_hash": self.last_content_hash,
            "file_path": self.file_path,
        }


@dataclass
class TrackerIssue:
    id: int
    number: int
    title: str
    body: str
    state: str  # open | closed
    labels: list[str] = field(default_factory=list)
    url: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> TrackerIssue:
        labels: list[str] = []
        raw_labels = payload.get("labels")
        if isinstance(raw_labels, list):
            for lbl in raw_labels:
                if isinstance(lbl, dict):
                    name = lbl.get("name")
                    if isinstance(name, str):
                        labels.append(name)
                elif isinstance(lbl, str):
                    labels.append(lbl)
        return cls(
            id=int(payload.get("id") or 0),
            number=int(payload.get("number") or 0),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            state=str(payload.get("state") or "open").lower(),
            labels=labels,
            url=str(payload.get("html_url") or ""),
            created_at=str(payload.get("created_at") or ""),
            updated_at=str(payload.get("updated_at") or ""),
        )


@dataclass
class RateLimitInfo:
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    used: int = 0


__all__ = ["TaskStatus", "Task", "SyncRecord", "TrackerIssue", "RateLimitInfo"]
