"""Errors raised by the loop engine."""

from __future__ import annotations

from pathlib import Path


class CoreError(RuntimeError):
    """Base class for loop engine failures."""


class InvalidInputError(CoreError):
    """Caller supplied parameters or project files the engine cannot work with."""


class CoreIoError(CoreError):
    """Filesystem failure annotated with the offending path."""

    def __init__(self, path: Path, error: OSError | UnicodeDecodeError) -> None:
        super().__init__(f"{path}: {error}")
        self.path = path
        self.error = error


class BackendFailure(CoreError):
    """Backend invocation failed; wraps the adapter error."""

    def __init__(self, message: str, *, raw_log: Path | None = None) -> None:
        super().__init__(message)
        self.raw_log = raw_log
