from pathlib import Path

import pytest

from tasksync.parser import derive_spec_group, parse_task_file, parse_tasks, validate_tasks


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        (".kiro/specs/auth/tasks.md", "auth"),
        ("repo/specs/billing/sub/tasks.md", "billing"),
        ("C:\\work\\specs\\billing\\tasks.md", "billing"),
        ("specs/tasks.md", "specs"),
        ("docs/plan/tasks.md", "plan"),
        ("tasks.md", "unknown"),
    ],
)
def test_derive_spec_group(path, expected):
    assert derive_spec_group(path) == expected


def test_markdown_links_are_not_tasks():
    text = "- [docs](https://example.com)\n- [ ] 1 Real task\n"
    tasks = parse_tasks(text, "tasks.md")
    assert [t.id for t in tasks] == ["1"]


def test_empty_document_and_untitled_checkbox():
    assert parse_tasks("", "tasks.md") == []
    assert parse_tasks("- [ ]\n- [x]   \n", "tasks.md") == []


def test_malformed_lines_never_raise():
    text = "- [ x\n- [\n-[]\n- [ ] 1 ok\n"
    tasks = parse_tasks(text, "tasks.md")
    assert [t.id for t in tasks] == ["1"]


def test_crlf_line_endings():
    text = "- [ ] 1 First\r\n  - detail\r\n- [x] 2 Second\r\n"
    first, second = parse_tasks(text, "tasks.md")
    assert first.description == "- detail"
    assert second.title == "Second"


def test_validate_reports_problems_with_line_numbers():
    text = "\n".join(
        [
            "- [ ] 1 First",
            "- [ ]",
            "- [?] 2 Odd marker",
            "- [ x",
            "- [ ] 1 Duplicate",
        ]
    )
    result = validate_tasks(text, "tasks.md")

    assert not result.valid
    lines = sorted(issue.line_number for issue in result.issues)
    assert lines == [2, 3, 4, 5]
    assert any("Duplicate task ID found: 1" in msg for msg in result.errors)
    assert any("Unrecognized checkbox marker [?]" in msg for msg in result.errors)
    assert any("Malformed task line" in msg for msg in result.errors)
    assert any("Task without title" in msg for msg in result.errors)


def test_validate_accepts_clean_document():
    text = "- [ ] 1 First\n- [ x ] 2 Second\n- [X] 3 Third\n- [-] 4 Fourth\n- [link](url)\n"
    result = validate_tasks(text)
    assert result.valid
    assert result.errors == []


def test_parse_task_file_reads_utf8(tmp_path: Path):
    doc = tmp_path / "specs" / "café" / "tasks.md"
    doc.parent.mkdir(parents=True)
    doc.write_text("- [ ] 1 Préparer l'environnement\n", encoding="utf-8")

    (task,) = parse_task_file(doc)
    assert task.title == "Préparer l'environnement"
    assert task.spec_group == "café"
    assert task.file_path == doc.as_posix()
