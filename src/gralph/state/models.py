"""Typed view of a persisted session record."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Lifecycle states a session record can be in."""

    RUNNING = "running"
    FAILED = "failed"
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    STOPPED = "stopped"
    STALE = "stale"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    VERIFY_FAILED = "verify-failed"


RESUMABLE_STATUSES = frozenset(
    {SessionStatus.STALE, SessionStatus.STOPPED, SessionStatus.FAILED},
)


@dataclass(slots=True)
class SessionRecord:
    """One session as stored in the state file.

    Unknown keys survive a round trip through :attr:`extra`.
    """

    name: str
    dir: str | None = None
    task_file: str | None = None
    pid: int | None = None
    tmux_session: str | None = None
    started_at: str | None = None
    iteration: int | None = None
    max_iterations: int | None = None
    status: SessionStatus | None = None
    last_task_count: int | None = None
    completion_marker: str | None = None
    log_file: str | None = None
    backend: str | None = None
    model: str | None = None
    variant: str | None = None
    webhook: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> SessionRecord:
        known = {item.name for item in fields(cls)} - {"extra"}
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                values[key] = value
            else:
                extra[key] = value
        status = values.get("status")
        if isinstance(status, str):
            try:
                values["status"] = SessionStatus(status)
            except ValueError:
                extra["status"] = status
                values["status"] = None
        for int_field in ("pid", "iteration", "max_iterations", "last_task_count"):
            raw = values.get(int_field)
            if isinstance(raw, bool) or not isinstance(raw, int):
                values[int_field] = _as_int(raw)
        values.setdefault("name", "")
        return cls(**values, extra=extra)

    def to_fields(self) -> dict[str, Any]:
        """Return the non-empty fields as a mapping suitable for ``StateStore.set``."""

        result: dict[str, Any] = dict(self.extra)
        for item in fields(self):
            if item.name == "extra":
                continue
            value = getattr(self, item.name)
            if value is None:
                continue
            result[item.name] = value.value if isinstance(value, SessionStatus) else value
        return result

    @property
    def status_text(self) -> str:
        if self.status is not None:
            return self.status.value
        raw = self.extra.get("status")
        return str(raw) if raw is not None else "unknown"


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
