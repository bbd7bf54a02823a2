from __future__ import annotations

import allure

from gralph.core.tasks import (
    count_remaining_tasks,
    first_unchecked_line,
    is_task_block_end,
    next_unchecked_block,
    task_blocks,
)

pytestmark = [
    allure.epic("Loop Engine"),
    allure.feature("Task File Parsing"),
]

BLOCK_FILE = """# Project

- [ ] stray item outside any block

### Task A-1
- [x] done
---
### Task A-2
- [ ] write parser
- [ ] wire CLI
## Notes
- [ ] note outside blocks
### Task A-3
- [ ] last one
"""


def test_count_plain_checklist(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_text("- [ ] a\n  - [ ] nested\n- [x] b\n* [ ] not a task\n", encoding="utf-8")

    assert count_remaining_tasks(task_file) == 2


def test_count_only_inside_blocks_when_headers_exist(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_text(BLOCK_FILE, encoding="utf-8")

    assert count_remaining_tasks(task_file) == 3


def test_count_missing_file_is_zero(tmp_path) -> None:
    assert count_remaining_tasks(tmp_path / "missing.md") == 0


def test_blocks_end_at_separator_heading_or_next_header() -> None:
    blocks = task_blocks(BLOCK_FILE)

    assert [block.splitlines()[0] for block in blocks] == [
        "### Task A-1",
        "### Task A-2",
        "### Task A-3",
    ]
    assert "---" not in blocks[0]
    assert "## Notes" not in blocks[1]
    assert "note outside blocks" not in blocks[1]


def test_empty_level_two_heading_does_not_end_block() -> None:
    assert is_task_block_end("---")
    assert is_task_block_end("## Next section")
    assert not is_task_block_end("## ")
    assert not is_task_block_end("### Task B")


def test_next_unchecked_block_skips_finished_blocks(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_text(BLOCK_FILE, encoding="utf-8")

    block = next_unchecked_block(task_file)

    assert block is not None
    assert block.startswith("### Task A-2")
    assert "- [ ] wire CLI" in block


def test_first_unchecked_line_without_blocks(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_text("- [x] done\n- [ ] todo\n", encoding="utf-8")

    assert next_unchecked_block(task_file) is None
    assert first_unchecked_line(task_file) == "- [ ] todo"


def test_undecodable_file_reads_as_empty(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_bytes(b"### Task A-1\n- [ ] caf\xe9 task\n")

    assert count_remaining_tasks(task_file) == 0
    assert next_unchecked_block(task_file) is None
    assert first_unchecked_line(task_file) is None


def test_directory_in_place_of_file_reads_as_empty(tmp_path) -> None:
    assert next_unchecked_block(tmp_path) is None
    assert first_unchecked_line(tmp_path) is None
