"""tasksync CLI.

Subcommands:
  sync      -> reconcile task documents with GitHub issues (summary JSON)
  validate  -> lint task documents without touching GitHub
  doctor    -> check token, repository access and rate limit
  state     -> inspect, export or import the sync ledger

Exit codes: 0 success, 1 sync/validation/ledger failure, 2 configuration error.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from tasksync.config import DEFAULT_CONFIG_FILE, ConfigError, SyncConfig, load_config
from tasksync.errors import StateError, TrackerError, redact
from tasksync.github_rest import GitHubTrackerClient
from tasksync.logging import configure_logging
from tasksync.parser import validate_tasks
from tasksync.reconcile import Reconciler, discover_documents, format_summary
from tasksync.state_store import SyncStateManager

REPO_HELP = "Override target repository (owner/repo)"
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

_MAX_HELP_WIDTH = 100


class _HelpFormatter(argparse.HelpFormatter):
    def __init__(self, prog: str) -> None:
        super().__init__(prog, max_help_position=30, width=_MAX_HELP_WIDTH)


class _FormatterArgumentParser(argparse.ArgumentParser):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("formatter_class", _HelpFormatter)
        super().__init__(*args, **kwargs)


def _build_parser() -> argparse.ArgumentParser:
    """Construct top-level CLI parser with subcommands."""
    p = _FormatterArgumentParser(
        prog="tasksync", description="Synchronize spec task checklists with GitHub issues"
    )
    p.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    sub = p.add_subparsers(
        dest="cmd",
        required=True,
        parser_class=_FormatterArgumentParser,
        metavar="<command>",
    )

    ps = sub.add_parser("sync", help="Create/update GitHub issues for changed tasks")
    ps.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    ps.add_argument("--repo", help=REPO_HELP)
    ps.add_argument("--dry-run", action="store_true", help="Report planned changes only")
    ps.add_argument(
        "--no-prune",
        action="store_true",
        help="Keep ledger records for tasks that no longer exist",
    )
    ps.add_argument("--summary-json", help="Write the run summary to this JSON file")

    pv = sub.add_parser("validate", help="Lint task documents")
    pv.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    pv.add_argument("paths", nargs="*", help="Documents to check (default: discover via config)")

    doc = sub.add_parser("doctor", help="Run diagnostics (auth, repo access, rate limit)")
    doc.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    doc.add_argument("--repo", help=REPO_HELP)

    st = sub.add_parser("state", help="Inspect or move the sync ledger")
    st_sub = st.add_subparsers(
        dest="state_cmd",
        required=True,
        parser_class=_FormatterArgumentParser,
        metavar="<action>",
    )
    st_stats = st_sub.add_parser("stats", help="Show ledger statistics")
    st_stats.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    st_export = st_sub.add_parser("export", help="Export the ledger as a JSON envelope")
    st_export.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    st_export.add_argument("--output", help="Write to file instead of stdout")
    st_import = st_sub.add_parser("import", help="Replace the ledger from an export envelope")
    st_import.add_argument("--config", default=DEFAULT_CONFIG_FILE)
    st_import.add_argument("file", help="Envelope produced by 'state export'")
    return p


def _load(args: argparse.Namespace) -> SyncConfig:
    cfg = load_config(args.config)
    cfg = cfg.with_repository(getattr(args, "repo", None))
    level = "WARNING" if args.quiet else cfg.logging_level
    configure_logging(json_logging=cfg.logging_json_enabled, level=level)
    return cfg


def _write_summary_json(path: str | None, payload: dict[str, Any]) -> None:
    if not path:
        return
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _cmd_sync(args: argparse.Namespace) -> int:
    cfg = _load(args)
    state = SyncStateManager(cfg.state_file)
    try:
        state.load()
    except StateError as exc:
        print(f"[sync] {exc}", file=sys.stderr)
        return EXIT_FAILURE
    client = None
    if not (args.dry_run and not cfg.tracker.token):
        client = GitHubTrackerClient(cfg.tracker)
    reconciler = Reconciler(
        client,
        state,
        label_prefix=cfg.tracker.label_prefix,
        dry_run=args.dry_run,
    )
    documents = discover_documents(cfg.source_root, cfg.source_pattern)
    prune = not args.no_prune
    if not documents:
        # a wrong root or pattern must not empty the ledger
        print(f"[sync] no documents matching {cfg.source_pattern} under {cfg.source_root}")
        prune = False
    summary = reconciler.run_paths(documents, root=cfg.source_root, prune=prune)
    for line in format_summary(summary):
        print(line)
    _write_summary_json(args.summary_json, summary.to_dict())
    return EXIT_OK if summary.ok else EXIT_FAILURE


def _validation_targets(args: argparse.Namespace) -> list[Path]:
    if args.paths:
        configure_logging(level="WARNING" if args.quiet else "INFO")
        return [Path(p) for p in args.paths]
    cfg = _load(args)
    return discover_documents(cfg.source_root, cfg.source_pattern)


def _cmd_validate(args: argparse.Namespace) -> int:
    targets = _validation_targets(args)
    problems = 0
    for path in targets:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            print(f"[validate] {path}: unreadable: {exc}", file=sys.stderr)
            problems += 1
            continue
        result = validate_tasks(text, path.as_posix())
        for issue in result.issues:
            print(f"[validate] {path}:{issue.line_number}: {issue}", file=sys.stderr)
        problems += len(result.issues)
    if problems:
        print(f"[validate] {problems} problem(s) in {len(targets)} file(s)", file=sys.stderr)
        return EXIT_FAILURE
    print(f"[validate] ok ({len(targets)} file(s))")
    return EXIT_OK


def _cmd_doctor(args: argparse.Namespace) -> int:
    """Check that the token works and the repository is reachable."""
    cfg = _load(args)
    client = GitHubTrackerClient(cfg.tracker)
    report = client.test_connection()
    if not report.success:
        print(f"[doctor] FAIL {redact(report.message)}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"[doctor] OK {report.message}")
    try:
        quota = client.get_rate_limit()
    except TrackerError as exc:
        print(f"[doctor] warning: rate limit unavailable: {redact(str(exc))}")
    else:
        print(f"[doctor] rate limit {quota.remaining}/{quota.limit}")
    return EXIT_OK


def _cmd_state(args: argparse.Namespace) -> int:
    cfg = _load(args)
    state = SyncStateManager(cfg.state_file)
    try:
        if args.state_cmd == "import":
            state.import_state(Path(args.file).read_text(encoding="utf-8"))
            state.save()
            print(f"[state] imported {len(state.all())} record(s) into {state.path}")
            return EXIT_OK
        state.load()
        if args.state_cmd == "export":
            payload = state.export_state() + "\n"
            if args.output:
                Path(args.output).write_text(payload, encoding="utf-8")
            else:
                sys.stdout.write(payload)
            return EXIT_OK
        stats = state.stats()
        print(f"[state] {state.path}")
        print(f"  records: {stats.total_records}")
        print(f"  files: {stats.file_count}")
        print(f"  last synced: {stats.last_synced_at or 'never'}")
        return EXIT_OK
    except (StateError, OSError) as exc:
        print(f"[state] {exc}", file=sys.stderr)
        return EXIT_FAILURE


_HANDLERS: dict[str, Callable[[argparse.Namespace], int]] = {
    "sync": _cmd_sync,
    "validate": _cmd_validate,
    "doctor": _cmd_doctor,
    "state": _cmd_state,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = _HANDLERS.get(args.cmd)
    if handler is None:  # pragma: no cover - argparse enforces valid choices
        parser.print_help()
        return EXIT_FAILURE
    try:
        return handler(args)
    except ConfigError as exc:
        print(f"[config] {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
