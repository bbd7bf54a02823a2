"""Checklist parsing for task files.

A task file is markdown with checklist lines (``- [ ] ...`` unchecked,
``- [x] ...`` done). Lines may be grouped into blocks that start at a
``### Task <id>`` header and end at a ``---`` separator, a non-empty
``## <title>`` heading, the next task header or end of file. When a file has
task headers, only checklist lines inside blocks count as work.
"""

from __future__ import annotations

from pathlib import Path

TASK_HEADER_PREFIX = "### Task "
UNCHECKED_PREFIX = "- [ ]"


def is_task_header(line: str) -> bool:
    return line.lstrip().startswith(TASK_HEADER_PREFIX)


def is_task_block_end(line: str) -> bool:
    if line.strip() == "---":
        return True
    stripped = line.lstrip()
    if not stripped.startswith("## "):
        return False
    return bool(stripped[3:].strip())


def is_unchecked_line(line: str) -> bool:
    return line.lstrip().startswith(UNCHECKED_PREFIX)


def task_blocks(contents: str) -> list[str]:
    """Split task file contents into task blocks; the end line is not part of a block."""

    blocks: list[str] = []
    current: list[str] | None = None

    for line in contents.splitlines():
        if is_task_header(line):
            if current is not None:
                blocks.append("\n".join(current))
            current = [line]
            continue

        if current is None:
            continue

        if is_task_block_end(line):
            blocks.append("\n".join(current))
            current = None
            continue

        current.append(line)

    if current:
        blocks.append("\n".join(current))
    return blocks


def read_task_text(task_file: Path) -> str | None:
    """Return the file contents, or None when it is missing or unreadable."""

    if not task_file.is_file():
        return None
    try:
        return task_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def read_task_blocks(task_file: Path) -> list[str]:
    contents = read_task_text(task_file)
    if contents is None:
        return []
    return task_blocks(contents)


def count_remaining_tasks(task_file: Path) -> int:
    """Count unchecked items; a missing or unreadable file counts as zero."""

    contents = read_task_text(task_file)
    if contents is None:
        return 0

    lines = contents.splitlines()
    if any(is_task_header(line) for line in lines):
        return sum(
            1
            for block in task_blocks(contents)
            for line in block.splitlines()
            if is_unchecked_line(line)
        )
    return sum(1 for line in lines if is_unchecked_line(line))


def next_unchecked_block(task_file: Path) -> str | None:
    """Return the first task block that still has an unchecked line."""

    for block in read_task_blocks(task_file):
        if any(is_unchecked_line(line) for line in block.splitlines()):
            return block
    return None


def first_unchecked_line(task_file: Path) -> str | None:
    contents = read_task_text(task_file)
    if contents is None:
        return None
    for line in contents.splitlines():
        if is_unchecked_line(line):
            return line
    return None
