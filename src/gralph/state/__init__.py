"""Session state persistence."""

from gralph.state.errors import (
    InvalidSessionNameError,
    InvalidStateError,
    LockTimeoutError,
    StateError,
    StateIoError,
)
from gralph.state.models import RESUMABLE_STATUSES, SessionRecord, SessionStatus
from gralph.state.process import OsProcessProbe, ProcessController, ProcessProbe
from gralph.state.store import CleanupMode, StateStore, parse_value

__all__ = [
    "RESUMABLE_STATUSES",
    "CleanupMode",
    "InvalidSessionNameError",
    "InvalidStateError",
    "LockTimeoutError",
    "OsProcessProbe",
    "ProcessController",
    "ProcessProbe",
    "SessionRecord",
    "SessionStatus",
    "StateError",
    "StateIoError",
    "StateStore",
    "parse_value",
]
