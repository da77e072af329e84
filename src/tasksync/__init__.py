"""tasksync - keep spec task checklists in sync with GitHub issues.

High-level public API:

from tasksync import GitHubTrackerClient, Reconciler, SyncStateManager, load_config

cfg = load_config('tasksync.config.yaml')
state = SyncStateManager(cfg.state_file)
client = GitHubTrackerClient(cfg.tracker)
summary = Reconciler(client, state).run_paths(discover_documents(cfg.source_root), root=cfg.source_root)
print(summary.totals)

The CLI (``tasksync sync``) wraps exactly this flow.
"""

from __future__ import annotations

from .config import ConfigError, SyncConfig, TrackerConfig, load_config
from .errors import ErrorKind, StateError, TaskSyncError, TrackerError
from .models import SyncRecord, Task, TaskStatus, TrackerIssue
from .parser import generate_content_hash, parse_tasks, validate_tasks
from .state_store import SyncStateManager

# Version constant (keep in sync with pyproject.toml)
__version__ = "0.1.0"


def __getattr__(name: str) -> object:
    """Lazy loading of the tracker client and reconciliation helpers.

    Lazily loaded attributes:
      - GitHubTrackerClient
      - Reconciler
      - IssueLookupCache
      - discover_documents
    """
    if name == "GitHubTrackerClient":
        from .github_rest import GitHubTrackerClient  # noqa: PLC0415

        return GitHubTrackerClient
    if name in {"Reconciler", "IssueLookupCache", "discover_documents"}:
        from . import reconcile  # noqa: PLC0415

        return getattr(reconcile, name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "ConfigError",
    "ErrorKind",
    "GitHubTrackerClient",
    "IssueLookupCache",
    "Reconciler",
    "StateError",
    "SyncConfig",
    "SyncRecord",
    "SyncStateManager",
    "Task",
    "TaskStatus",
    "TaskSyncError",
    "TrackerConfig",
    "TrackerError",
    "TrackerIssue",
    "discover_documents",
    "generate_content_hash",
    "load_config",
    "parse_tasks",
    "validate_tasks",
    "__version__",
]
