"""Value types produced by the loop engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class LoopStatus(str, Enum):
    """Engine state reported in progress events and outcomes."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    MAX_ITERATIONS = "max_iterations"

    def is_terminal(self) -> bool:
        return self is not LoopStatus.RUNNING


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """One observation of loop progress."""

    session_name: str | None
    iteration: int
    status: LoopStatus
    remaining: int


@dataclass(slots=True, frozen=True)
class LoopOutcome:
    """Final result of a loop run, persisted by the caller."""

    status: LoopStatus
    iterations: int
    remaining_tasks: int
    duration_secs: int


ProgressSink = Callable[[ProgressEvent], None]
