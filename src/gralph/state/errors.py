"""Errors raised by the session state store."""

from __future__ import annotations

from pathlib import Path


class StateError(RuntimeError):
    """Base class for state store failures."""


class InvalidSessionNameError(StateError):
    def __init__(self) -> None:
        super().__init__("session name is required")


class LockTimeoutError(StateError):
    """Another process held the state lock for longer than the timeout."""

    def __init__(self, lock_file: Path, timeout_seconds: float) -> None:
        super().__init__(f"timed out after {timeout_seconds:g}s waiting for state lock {lock_file}")
        self.lock_file = lock_file
        self.timeout_seconds = timeout_seconds


class InvalidStateError(StateError):
    """State content or a requested mutation is not valid."""


class StateIoError(StateError):
    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(f"state io error at {path}: {error}")
        self.path = path
        self.error = error
