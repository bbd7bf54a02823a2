"""Deterministic local agent for loop integration tests.

Behaves like a well-mannered coding agent: while the task file has unchecked
items it checks exactly one and exits; once none remain it prints the
completion promise found in the prompt.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
from pathlib import Path

_TASK_FILE_PATTERN = re.compile(r"Read (\S+) carefully")
_MARKER_PATTERN = re.compile(r"<promise>(.*?)</promise>")


def main(argv: list[str] | None = None) -> int:
    """Check one task or announce completion."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--model", default=None)
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--auto-approve", action="store_true")
    parser.add_argument("prompt")
    args, _unknown = parser.parse_known_args(argv)

    task_match = _TASK_FILE_PATTERN.search(args.prompt)
    task_file = Path(
        task_match.group(1) if task_match else os.getenv("GRALPH_ECHO_TASK_FILE", "PRD.md"),
    )
    marker_match = _MARKER_PATTERN.search(args.prompt)
    marker = marker_match.group(1) if marker_match else "COMPLETE"

    lines = task_file.read_text(encoding="utf-8").splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.lstrip().startswith("- [ ]"):
            lines[index] = line.replace("- [ ]", "- [x]", 1)
            task_file.write_text("".join(lines), encoding="utf-8")
            print(f"Completed: {line.strip()[len('- [ ]') :].strip()}")
            return 0

    print("All tasks are checked.")
    print(f"<promise>{marker}</promise>")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
