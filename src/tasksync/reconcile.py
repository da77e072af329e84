"""Reconciliation of parsed task documents with the ledger and GitHub.

For every parsed task the content hash is compared with the ledger record:

* no record     -> adopt an issue already carrying the task label, else create one
* hash/path differs -> push title, body and managed labels to the recorded issue
* otherwise     -> unchanged, no network traffic

After a push the issue state follows the checkbox (closed when completed,
reopened when it regressed) and the ledger is saved immediately, so a crash
mid-run never loses finished work. Labels under the managed prefixes are
owned by tasksync; every other label on an issue is left alone.

Orphaned ledger records (tasks that disappeared from every document) are
only dropped from the ledger; their issues are never closed.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .errors import ErrorInfo, ParseError, StateError, TaskSyncError, TrackerError, classify_error, redact
from .logging import get_logger
from .models import Task, TaskStatus, TrackerIssue
from .parser import generate_content_hash, generate_issue_description, parse_tasks
from .state_store import SyncStateManager

DEFAULT_LABEL_PREFIX = "task:"
DEFAULT_PATTERN = "**/tasks.md"
MANAGED_LABEL_PREFIXES = ("spec:", "status:", "phase:", "requirement:")
# Ledger hash for an issue whose follow-up calls did not finish; never matches a real hash.
PENDING_HASH = ""

ACTIONS = ("created", "linked", "updated", "unchanged", "would_create", "would_update", "failed")

_phase_re = re.compile(r"^(\d+)")
_slug_re = re.compile(r"[^a-z0-9]+")


class TrackerClient(Protocol):
    def create_issue(
        self, title: str, body: str, labels: Iterable[str] | None = None
    ) -> TrackerIssue: ...

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        labels: Iterable[str] | None = None,
        state: str | None = None,
    ) -> TrackerIssue: ...

    def close_issue(self, number: int) -> TrackerIssue: ...

    def reopen_issue(self, number: int) -> TrackerIssue: ...

    def find_issue_by_label(self, label: str) -> TrackerIssue | None: ...


def issue_title(task: Task) -> str:
    return f"[{task.spec_group}] {task.id}: {task.title}"


def issue_labels(task: Task, prefix: str = DEFAULT_LABEL_PREFIX) -> list[str]:
    labels = [f"{prefix}{task.id}", f"spec:{task.spec_group}", f"status:{task.status.value}"]
    phase = _phase_re.match(task.id)
    if phase:
        labels.append(f"phase:{phase.group(1)}")
    for requirement in task.requirements or []:
        slug = _slug_re.sub("-", requirement.lower()).strip("-")
        label = f"requirement:{slug}"
        if slug and label not in labels:
            labels.append(label)
    return labels


def is_managed_label(label: str, prefix: str = DEFAULT_LABEL_PREFIX) -> bool:
    if prefix and label.startswith(prefix):
        return True
    return label.startswith(MANAGED_LABEL_PREFIXES)


def merge_labels(current: Iterable[str], desired: Iterable[str], prefix: str = DEFAULT_LABEL_PREFIX) -> list[str]:
    """Desired managed labels followed by every unmanaged label already present."""
    merged: list[str] = []
    for label in list(desired) + [c for c in current if not is_managed_label(c, prefix)]:
        if label not in merged:
            merged.append(label)
    return merged


def discover_documents(root: str | Path, pattern: str = DEFAULT_PATTERN) -> list[Path]:
    base = Path(root)
    if not base.is_dir():
        return []
    return sorted(p for p in base.glob(pattern) if p.is_file())


class IssueLookupCache:
    """Label -> issue answers for one run, including "not found" answers."""

    def __init__(self) -> None:
        self._entries: dict[str, TrackerIssue | None] = {}
        self.hits = 0
        self.misses = 0

    def lookup(self, label: str, fetch: Callable[[str], TrackerIssue | None]) -> TrackerIssue | None:
        if label in self._entries:
            self.hits += 1
            return self._entries[label]
        self.misses += 1
        issue = fetch(label)
        self._entries[label] = issue
        return issue

    def store(self, label: str, issue: TrackerIssue | None) -> None:
        self._entries[label] = issue

    def invalidate(self, label: str) -> None:
        self._entries.pop(label, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, label: object) -> bool:
        return label in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class TaskOutcome:
    task_id: str
    file_path: str
    action: str
    issue_number: int | None = None
    error: ErrorInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "task_id": self.task_id,
            "file_path": self.file_path,
            "action": self.action,
        }
        if self.issue_number is not None:
            out["issue_number"] = self.issue_number
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out


@dataclass
class DocumentFailure:
    file_path: str
    error: str


@dataclass
class ReconcileSummary:
    dry_run: bool = False
    outcomes: list[TaskOutcome] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    orphans_removed: bool = False
    document_failures: list[DocumentFailure] = field(default_factory=list)
    ledger_error: str | None = None

    @property
    def totals(self) -> dict[str, int]:
        counts = {action: 0 for action in ACTIONS}
        for outcome in self.outcomes:
            counts[outcome.action] = counts.get(outcome.action, 0) + 1
        counts["parsed"] = len(self.outcomes)
        return counts

    @property
    def failures(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes if o.action == "failed"]

    @property
    def all_failed(self) -> bool:
        attempted = [o for o in self.outcomes if o.action != "unchanged"]
        return bool(attempted) and all(o.action == "failed" for o in attempted)

    @property
    def ok(self) -> bool:
        return not self.all_failed and self.ledger_error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "totals": self.totals,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "orphans": list(self.orphans),
            "orphans_removed": self.orphans_removed,
            "document_failures": [
                {"file_path": f.file_path, "error": f.error} for f in self.document_failures
            ],
            "ledger_error": self.ledger_error,
        }


def format_summary(summary: ReconcileSummary) -> list[str]:
    totals = summary.totals
    head = " ".join(f"{key}={totals[key]}" for key in (*ACTIONS, "parsed") if totals[key] or key == "parsed")
    lines = [f"[sync] {head}" + (" (dry-run)" if summary.dry_run else "")]
    for outcome in summary.failures:
        err = outcome.error
        detail = f"{err.category}: {err.message}" if err else "unknown error"
        lines.append(f"  failed: {outcome.task_id} ({outcome.file_path}) {detail}")
    for doc in summary.document_failures:
        lines.append(f"  unreadable: {doc.file_path} {doc.error}")
    if summary.orphans:
        verb = "removed" if summary.orphans_removed else "kept"
        lines.append(f"  orphaned records ({verb}): {', '.join(summary.orphans)}")
    if summary.ledger_error:
        lines.append(f"  ledger error: {summary.ledger_error}")
    return lines


class Reconciler:
    def __init__(
        self,
        client: TrackerClient | None,
        state: SyncStateManager,
        *,
        label_prefix: str = DEFAULT_LABEL_PREFIX,
        dry_run: bool = False,
        lookup_cache: IssueLookupCache | None = None,
        extra_context: str | None = None,
    ) -> None:
        if client is None and not dry_run:
            raise ValueError("a tracker client is required unless dry_run is set")
        self.client = client
        self.state = state
        self.label_prefix = label_prefix
        self.dry_run = dry_run
        self.lookup_cache = lookup_cache if lookup_cache is not None else IssueLookupCache()
        self.extra_context = extra_context
        self._seen: dict[str, str] = {}
        self._ledger_error: str | None = None
        self._log = get_logger()

    # ---- per task -----------------------------------------------------
    def _failed(self, task: Task, exc: Exception, issue_number: int | None = None) -> TaskOutcome:
        info = classify_error(exc)
        self._log.log_error(
            f"task {task.id} failed: {info.message}",
            error=info.category,
            task_id=task.id,
            operation="task_failed",
        )
        return TaskOutcome(task.id, task.file_path, "failed", issue_number, error=info)

    def _commit(self, task: Task, issue_number: int, content_hash: str) -> None:
        self.state.update(task.id, issue_number, content_hash, task.file_path)
        try:
            self.state.save()
        except StateError as exc:
            self._ledger_error = redact(str(exc))
            raise

    def _require_client(self) -> TrackerClient:
        if self.client is None:
            raise TaskSyncError("no tracker client configured (dry run only)")
        return self.client

    def _align_state(self, task: Task, issue: TrackerIssue) -> TrackerIssue:
        client = self._require_client()
        completed = task.status is TaskStatus.COMPLETED
        if completed and not issue.is_closed:
            return client.close_issue(issue.number)
        if not completed and issue.is_closed:
            return client.reopen_issue(issue.number)
        return issue

    def _push(self, task: Task, number: int) -> TrackerIssue:
        """Refresh title and body, then realign managed labels if they drifted."""
        client = self._require_client()
        issue = client.update_issue(
            number,
            title=issue_title(task),
            body=generate_issue_description(task, self.extra_context),
        )
        merged = merge_labels(issue.labels, issue_labels(task, self.label_prefix), self.label_prefix)
        if sorted(merged) != sorted(issue.labels):
            issue = client.update_issue(number, labels=merged)
        return issue

    def _create_or_link(self, task: Task, content_hash: str) -> TaskOutcome:
        client = self._require_client()
        label = f"{self.label_prefix}{task.id}"
        existing = self.lookup_cache.lookup(label, client.find_issue_by_label)
        if existing is not None:
            issue = self._push(task, existing.number)
            action = "linked"
        else:
            issue = client.create_issue(
                issue_title(task),
                generate_issue_description(task, self.extra_context),
                issue_labels(task, self.label_prefix),
            )
            action = "created"
        # record the issue before any follow-up call can fail
        self._commit(task, issue.number, PENDING_HASH)
        issue = self._align_state(task, issue)
        self.lookup_cache.store(label, issue)
        self._commit(task, issue.number, content_hash)
        return TaskOutcome(task.id, task.file_path, action, issue.number)

    def _reconcile_task(self, task: Task) -> TaskOutcome:
        if task.id in self._seen:
            return self._failed(
                task,
                ParseError(
                    f"Duplicate task ID {task.id} (first seen in {self._seen[task.id]})",
                    line_number=task.line_number,
                ),
            )
        self._seen[task.id] = task.file_path
        try:
            content_hash = generate_content_hash(task)
            record = self.state.get(task.id)
            if record is not None and not self.state.needs_sync(task, content_hash):
                return TaskOutcome(task.id, task.file_path, "unchanged", record.tracker_issue_number)
            if self.dry_run:
                action = "would_create" if record is None else "would_update"
                number = record.tracker_issue_number if record else None
                self._log.log_task_action(action, task.id, number, dry_run=True)
                return TaskOutcome(task.id, task.file_path, action, number)
            if record is None:
                outcome = self._create_or_link(task, content_hash)
            else:
                issue = self._align_state(task, self._push(task, record.tracker_issue_number))
                self._commit(task, issue.number, content_hash)
                outcome = TaskOutcome(task.id, task.file_path, "updated", issue.number)
        except (TrackerError, StateError) as exc:
            current = self.state.get(task.id)
            return self._failed(task, exc, current.tracker_issue_number if current else None)
        self._log.log_task_action(outcome.action, task.id, outcome.issue_number)
        return outcome

    # ---- per document / run ------------------------------------------
    def reconcile_document(self, text: str, file_path: str) -> list[TaskOutcome]:
        if not self.state.is_loaded:
            self.state.load()
        tasks = parse_tasks(text, file_path)
        self._log.debug(f"reconciling {len(tasks)} tasks from {file_path}", file_path=file_path)
        return [self._reconcile_task(task) for task in tasks]

    def run(
        self,
        documents: Iterable[tuple[str, str]],
        *,
        prune: bool = True,
        document_failures: Iterable[DocumentFailure] | None = None,
    ) -> ReconcileSummary:
        """Reconcile ``(file_path, text)`` pairs, then report or drop orphans."""
        summary = ReconcileSummary(dry_run=self.dry_run, document_failures=list(document_failures or []))
        self._seen = {}
        self._ledger_error = None
        if not self.state.is_loaded:
            self.state.load()
        with self._log.timed_operation("reconcile", dry_run=self.dry_run):
            for file_path, text in documents:
                summary.outcomes.extend(self.reconcile_document(text, file_path))
            self._handle_orphans(summary, prune)
        summary.ledger_error = self._ledger_error
        return summary

    def _handle_orphans(self, summary: ReconcileSummary, prune: bool) -> None:
        if summary.document_failures:
            self._log.warning(
                "Skipping orphan cleanup: some documents could not be read",
                operation="orphan_cleanup",
            )
            return
        valid_ids = set(self._seen)
        if not prune or self.dry_run:
            summary.orphans = [r.task_id for r in self.state.all() if r.task_id not in valid_ids]
            return
        if not valid_ids and self.state.all():
            self._log.warning(
                "Skipping orphan cleanup: no tasks were parsed but the ledger is not empty",
                operation="orphan_cleanup",
            )
            return
        summary.orphans = self.state.cleanup_orphans(valid_ids)
        if not summary.orphans:
            return
        summary.orphans_removed = True
        try:
            self.state.save()
        except StateError as exc:
            self._ledger_error = redact(str(exc))

    def run_paths(
        self,
        paths: Iterable[str | Path],
        root: str | Path | None = None,
        *,
        prune: bool = True,
    ) -> ReconcileSummary:
        """Read documents from disk; paths are recorded relative to ``root``."""
        documents: list[tuple[str, str]] = []
        failures: list[DocumentFailure] = []
        for raw in paths:
            path = Path(raw)
            display = path.as_posix()
            if root is not None and path.is_relative_to(root):
                display = path.relative_to(root).as_posix()
            try:
                documents.append((display, path.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError) as exc:
                failures.append(DocumentFailure(display, str(exc)))
        return self.run(documents, prune=prune, document_failures=failures)


__all__ = [
    "DocumentFailure",
    "IssueLookupCache",
    "ReconcileSummary",
    "Reconciler",
    "TaskOutcome",
    "TrackerClient",
    "discover_documents",
    "format_summary",
    "is_managed_label",
    "issue_labels",
    "issue_title",
    "merge_labels",
]
