"""Checklist parser for spec ``tasks.md`` documents.

Grammar (one task per checklist line, at any indentation)::

    - [ ] 1. Setup project structure
      - Create basic folder structure
      - _Requirements: 1.1, 1.2_
    - [-] 2.1 Implement core features
    - [x] Write documentation

Indented or bulleted lines after a task form its description; a markdown
heading or horizontal rule closes the current task. ``parse_tasks`` is lenient
and never raises on malformed input; ``validate_tasks`` reports the same
problems as ``ParseError`` values for pre-flight linting.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import ParseError
from .logging import get_logger
from .models import Task, TaskStatus

AUTO_GENERATED_MARKER = "*This issue was automatically generated by tasksync*"
_TASK_MARKER_PREFIX = "<!-- tasksync:task="

# "](" is a markdown link inside a bullet, not a checkbox
_checkbox_re = re.compile(r"^\s*-\s*\[([^\]]*)\](?!\()\s*(.*)$")
_checkbox_start_re = re.compile(r"^\s*-\s*\[(?![^\]]*\]\()")
_id_title_re = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+(\S.*)$")
_requirements_re = re.compile(r"_Requirements:\s*([^_\n]+)", re.IGNORECASE)
_rule_re = re.compile(r"^(?:-{3,}|\*{3,}|_{3,})$")

_KNOWN_MARKERS = {" ", "-"}


@dataclass
class ValidationResult:
    issues: list[ParseError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def errors(self) -> list[str]:
        return [str(issue) for issue in self.issues]


@dataclass
class _Pending:
    id: str | None
    title: str
    status: TaskStatus
    line_number: int
    description: list[str] = field(default_factory=list)
    requirements: list[str] | None = None


def marker_status(marker: str) -> TaskStatus:
    """Map the text between the checkbox brackets to a status.

    Unknown or malformed markers fall back to ``NOT_STARTED``.
    """
    if marker.strip().lower() == "x":
        return TaskStatus.COMPLETED
    if marker == "-":
        return TaskStatus.IN_PROGRESS
    return TaskStatus.NOT_STARTED


def derive_spec_group(file_path: str) -> str:
    parts = PurePosixPath(file_path.replace("\\", "/")).parts
    if "specs" in parts:
        idx = parts.index("specs")
        if idx < len(parts) - 2:
            return parts[idx + 1]
    parent = PurePosixPath(file_path.replace("\\", "/")).parent.name
    return parent or "unknown"


def extract_requirements(line: str) -> list[str] | None:
    m = _requirements_re.search(line)
    if not m:
        return None
    return [tok.strip() for tok in m.group(1).split(",") if tok.strip()]


def _split_title(rest: str) -> tuple[str | None, str]:
    m = _id_title_re.match(rest)
    if m:
        return m.group(1), m.group(2).strip()
    return None, rest.strip()


def _is_section_break(stripped: str) -> bool:
    return stripped.startswith("#") or bool(_rule_re.match(stripped))


def _is_description_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return False
    if stripped.startswith(("-", "*")) or line.startswith(("  ", "\t")):
        return True
    return bool(_requirements_re.search(stripped))


def synthetic_task_id(spec_group: str, title: str, description: str | None) -> str:
    """Deterministic id for tasks that carry no dotted numeric id.

    Identical content in the same spec group always maps to the same id, so
    the ledger keeps tracking such tasks across runs.
    """
    canonical = "\x1f".join([spec_group, title.strip().lower(), (description or "").strip()])
    return "task-" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:8]


def _finalize(pending: _Pending, file_path: str, spec_group: str) -> Task:
    description = "\n".join(line for line in pending.description if line).strip() or None
    task_id = pending.id or synthetic_task_id(spec_group, pending.title, description)
    return Task(
        id=task_id,
        title=pending.title,
        status=pending.status,
        file_path=file_path,
        line_number=pending.line_number,
        spec_group=spec_group,
        description=description,
        requirements=pending.requirements,
    )


def parse_tasks(text: str, file_path: str) -> list[Task]:
    spec_group = derive_spec_group(file_path)
    tasks: list[Task] = []
    current: _Pending | None = None

    for lineno, line in enumerate(text.splitlines(), start=1):
        m = _checkbox_re.match(line)
        if m and m.group(2).strip():
            if current:
                tasks.append(_finalize(current, file_path, spec_group))
            task_id, title = _split_title(m.group(2))
            current = _Pending(id=task_id, title=title, status=marker_status(m.group(1)), line_number=lineno)
            continue
        if current is None:
            continue
        stripped = line.strip()
        if not stripped:
            continue
        if _is_section_break(stripped):
            tasks.append(_finalize(current, file_path, spec_group))
            current = None
            continue
        if m or not _is_description_line(line):
            # Checklist line without a title, or unindented prose.
            continue
        requirements = extract_requirements(stripped)
        if requirements is not None:
            current.requirements = requirements
            continue
        current.description.append(stripped)

    if current:
        tasks.append(_finalize(current, file_path, spec_group))
    return tasks


def parse_task_file(path: str | Path) -> list[Task]:
    p = Path(path)
    tasks = parse_tasks(p.read_text(encoding="utf-8"), p.as_posix())
    get_logger().debug("parsed task file", file_path=p.as_posix(), task_count=len(tasks))
    return tasks


def validate_tasks(text: str, file_path: str = "") -> ValidationResult:
    result = ValidationResult()
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not _checkbox_start_re.match(line):
            continue
        m = _checkbox_re.match(line)
        if not m:
            result.issues.append(
                ParseError(f"Malformed task line at {lineno}: {line.strip()}", line_number=lineno)
            )
            continue
        if not m.group(2).strip():
            result.issues.append(
                ParseError(f"Task without title at line {lineno}", line_number=lineno)
            )
        if m.group(1) not in _KNOWN_MARKERS and m.group(1).strip().lower() != "x":
            result.issues.append(
                ParseError(
                    f"Unrecognized checkbox marker [{m.group(1)}] at line {lineno}",
                    line_number=lineno,
                )
            )

    seen: dict[str, int] = {}
    for task in parse_tasks(text, file_path or "tasks.md"):
        if task.id in seen:
            result.issues.append(
                ParseError(
                    f"Duplicate task ID found: {task.id} (lines {seen[task.id]} and {task.line_number})",
                    line_number=task.line_number,
                )
            )
            continue
        seen[task.id] = task.line_number
    return result


def generate_content_hash(task: Task) -> str:
    canonical = json.dumps(
        {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status.value,
            "requirements": sorted(task.requirements or []),
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def are_equivalent(a: Task, b: Task) -> bool:
    return generate_content_hash(a) == generate_content_hash(b)


def task_marker(task_id: str) -> str:
    return f"{_TASK_MARKER_PREFIX}{task_id} -->"


def extract_task_id(body: str | None) -> str | None:
    if not body:
        return None
    idx = body.find(_TASK_MARKER_PREFIX)
    if idx == -1:
        return None
    tail = body[idx + len(_TASK_MARKER_PREFIX):]
    end = tail.find("-->")
    if end == -1:
        return None
    return tail[:end].strip() or None


def generate_issue_description(task: Task, extra_context: str | None = None) -> str:
    sections = [task_marker(task.id)]
    if task.description:
        sections.append(task.description)
    if extra_context:
        sections.append(extra_context.strip())
    footer = [
        "---",
        "**Task Information**",
        "",
        f"- **Task ID:** {task.id}",
        f"- **Spec:** {task.spec_group}",
        f"- **Status:** {task.status.value}",
        f"- **Source:** {task.file_path}:{task.line_number}",
    ]
    if task.requirements:
        footer.append(f"- **Requirements:** {', '.join(task.requirements)}")
    footer.extend(["", AUTO_GENERATED_MARKER])
    sections.append("\n".join(footer))
    return "\n\n".join(sections) + "\n"


__all__ = [
    "AUTO_GENERATED_MARKER",
    "ParseError",
    "ValidationResult",
    "are_equivalent",
    "derive_spec_group",
    "extract_requirements",
    "extract_task_id",
    "generate_content_hash",
    "generate_issue_description",
    "marker_status",
    "parse_task_file",
    "parse_tasks",
    "synthetic_task_id",
    "task_marker",
    "validate_tasks",
]
