"""Completion promise detection."""

from __future__ import annotations

from pathlib import Path

from gralph.core.errors import InvalidInputError
from gralph.core.tasks import count_remaining_tasks

NEGATION_PHRASES = (
    "cannot",
    "can't",
    "won't",
    "will not",
    "do not",
    "don't",
    "should not",
    "shouldn't",
    "must not",
    "mustn't",
)


def promise_line_for(marker: str) -> str:
    return f"<promise>{marker}</promise>"


def last_non_empty_line(text: str) -> str | None:
    """Return the last line that is not blank; whitespace-only lines are skipped."""

    last: str | None = None
    for line in text.splitlines():
        if line.strip():
            last = line
    return last


def is_negated_promise(line: str) -> bool:
    lowered = line.lower()
    index = lowered.find("<promise>")
    if index < 0:
        return False
    prefix = lowered[:index]
    return any(phrase in prefix for phrase in NEGATION_PHRASES)


def check_completion(task_file: Path, result: str, completion_marker: str) -> bool:
    """Decide whether the agent output signals that every task is done.

    The task file must have zero unchecked items and the last non-empty line of
    ``result``, stripped of surrounding whitespace, must be exactly the promise
    line for ``completion_marker`` with no negation before it.
    """

    if not result.strip():
        return False
    if not task_file.is_file():
        raise InvalidInputError(f"task file does not exist: {task_file}")
    if count_remaining_tasks(task_file) > 0:
        return False

    line = last_non_empty_line(result) or ""
    if is_negated_promise(line):
        return False
    return line.strip() == promise_line_for(completion_marker)
