from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import StateError
from .models import SyncRecord, Task

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path(".tasksync") / "sync-state.json"
EXPORT_VERSION = 1

_RECORD_FIELDS: dict[str, type] = {
    "task_id": str,
    "tracker_issue_number": int,
    "last_synced_at": str,
    "last_content_hash": str,
    "file_path": str,
}


@dataclass
class SyncStats:
    total_records: int
    file_count: int
    last_synced_at: str | None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_valid_record(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    for name, expected in _RECORD_FIELDS.items():
        value = raw.get(name)
        # bool is an int subclass; an issue number of True is still garbage
        if isinstance(value, bool) or not isinstance(value, expected):
            return False
    return True


def _record_from_dict(raw: dict[str, Any]) -> SyncRecord:
    return SyncRecord(**{name: raw[name] for name in _RECORD_FIELDS})


def _coerce_records(raw: Any, *, source: str) -> dict[str, SyncRecord]:
    if not isinstance(raw, list):
        raise StateError(f"{source}: expected a list of sync records")
    records: dict[str, SyncRecord] = {}
    for entry in raw:
        if not _is_valid_record(entry):
            raise StateError(f"{source}: invalid sync record {json.dumps(entry, default=str)}")
        record = _record_from_dict(entry)
        if record.task_id in records:
            raise StateError(f"{source}: duplicate sync record for task {record.task_id}")
        records[record.task_id] = record
    return records


class SyncStateManager:
    """File-backed ledger mapping task ids to their GitHub issue and fingerprint.

    The whole ledger lives in memory after ``load()``; ``save()`` rewrites the
    file atomically. Nothing here talks to GitHub: removing a record (including
    via ``cleanup_orphans``) never closes the issue it pointed to.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path = Path(path) if path is not None else DEFAULT_STATE_FILE
        self._clock = clock
        self._records: dict[str, SyncRecord] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # ---- persistence --------------------------------------------------
    def load(self) -> None:
        if not self._path.exists():
            logger.info("No sync state at %s; starting fresh", self._path)
            self._records = {}
            self._loaded = True
            return
        try:
            raw: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StateError(f"Failed to load sync state from {self._path}: {exc}") from exc
        self._records = _coerce_records(raw, source=str(self._path))
        self._loaded = True
        logger.debug("Loaded %d sync records from %s", len(self._records), self._path)

    def save(self) -> None:
        self._ensure_loaded()
        payload = [record.to_dict() for record in self._records.values()]
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise StateError(f"Failed to save sync state to {self._path}: {exc}") from exc
        logger.debug("Saved %d sync records to %s", len(payload), self._path)

    # ---- accessors ----------------------------------------------------
    def get(self, task_id: str) -> SyncRecord | None:
        self._ensure_loaded()
        return self._records.get(task_id)

    def set(self, task_id: str, record: SyncRecord) -> None:
        self._ensure_loaded()
        self._records[task_id] = record

    def update(
        self, task_id: str, issue_number: int, content_hash: str, file_path: str
    ) -> SyncRecord:
        record = SyncRecord(
            task_id=task_id,
            tracker_issue_number=issue_number,
            last_synced_at=self._clock().isoformat(),
            last_content_hash=content_hash,
            file_path=file_path,
        )
        self.set(task_id, record)
        return record

    def remove(self, task_id: str) -> bool:
        self._ensure_loaded()
        return self._records.pop(task_id, None) is not None

    def all(self) -> list[SyncRecord]:
        self._ensure_loaded()
        return list(self._records.values())

    def for_file(self, file_path: str) -> list[SyncRecord]:
        self._ensure_loaded()
        return [record for record in self._records.values() if record.file_path == file_path]

    def clear(self) -> None:
        self._records = {}
        self._loaded = True

    def stats(self) -> SyncStats:
        records = self.all()
        return SyncStats(
            total_records=len(records),
            file_count=len({r.file_path for r in records}),
            last_synced_at=max((r.last_synced_at for r in records), default=None),
        )

    # ---- diffing ------------------------------------------------------
    def needs_sync(self, task: Task, current_hash: str) -> bool:
        record = self.get(task.id)
        if record is None:
            logger.debug("task %s needs sync: no ledger record", task.id)
            return True
        if record.last_content_hash != current_hash:
            logger.debug("task %s needs sync: content hash changed", task.id)
            return True
        if record.file_path != task.file_path:
            logger.debug(
                "task %s needs sync: moved from %s to %s", task.id, record.file_path, task.file_path
            )
            return True
        return False

    def cleanup_orphans(self, valid_ids: Iterable[str]) -> list[str]:
        self._ensure_loaded()
        keep = set(valid_ids)
        orphaned = [task_id for task_id in self._records if task_id not in keep]
        for task_id in orphaned:
            del self._records[task_id]
        if orphaned:
            logger.info("Removed %d orphaned sync records: %s", len(orphaned), ", ".join(orphaned))
        return orphaned

    # ---- export / import ---------------------------------------------
    def export_state(self) -> str:
        self._ensure_loaded()
        envelope = {
            "version": EXPORT_VERSION,
            "exported_at": self._clock().isoformat(),
            "states": [record.to_dict() for record in self._records.values()],
        }
        return json.dumps(envelope, indent=2)

    def import_state(self, data: str) -> None:
        """Replace the ledger with an exported envelope.

        Everything is validated before the swap, so a rejected import leaves
        the current records untouched.
        """
        try:
            envelope: Any = json.loads(data)
        except ValueError as exc:
            raise StateError(f"Invalid import data: {exc}") from exc
        if not isinstance(envelope, dict):
            raise StateError("Invalid import data: expected an object envelope")
        version = envelope.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or not 1 <= version <= EXPORT_VERSION:
            raise StateError(f"Invalid import data: unsupported version {version!r}")
        if not isinstance(envelope.get("exported_at"), str):
            raise StateError("Invalid import data: missing exported_at")
        records = _coerce_records(envelope.get("states"), source="import")
        self._records = records
        self._loaded = True
        logger.info("Imported %d sync records (version %s)", len(records), version)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raise StateError("Sync state not loaded. Call load() first.")


__all__ = ["DEFAULT_STATE_FILE", "EXPORT_VERSION", "SyncStats", "SyncStateManager"]
