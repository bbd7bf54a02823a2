"""File-backed session state store shared by every gralph process on a machine.

The whole state is one JSON document ``{"sessions": {name: {...}}}``. Every
operation holds an exclusive advisory lock on a sibling lock file for its
full read-modify-write cycle, and writes go through a temp file plus rename,
so readers never observe a half-written document.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from gralph.state.errors import (
    InvalidSessionNameError,
    InvalidStateError,
    LockTimeoutError,
    StateIoError,
)
from gralph.state.models import SessionStatus
from gralph.state.process import OsProcessProbe, ProcessProbe

if TYPE_CHECKING:
    from gralph.config import StoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_POLL_SECONDS = 0.1


class CleanupMode(str, Enum):
    MARK = "mark"
    REMOVE = "remove"


class StateStore:
    """Session map persisted as JSON under an advisory file lock."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        state_dir: Path,
        state_file: Path | None = None,
        lock_file: Path | None = None,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_LOCK_POLL_SECONDS,
        probe: ProcessProbe | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state_dir = state_dir
        self.state_file = state_file or state_dir / "state.json"
        self.lock_file = lock_file or state_dir / "state.lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.probe: ProcessProbe = probe or OsProcessProbe()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: StoreSettings,
        *,
        probe: ProcessProbe | None = None,
    ) -> StateStore:
        return cls(
            state_dir=settings.state_dir,
            state_file=settings.state_file,
            lock_file=settings.lock_file,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            poll_interval_seconds=settings.lock_poll_seconds,
            probe=probe,
        )

    def init(self) -> None:
        """Create the state directory and file; reset an unreadable document."""

        with self._locked():
            self._init_unlocked()

    def get(self, name: str) -> dict[str, Any] | None:
        _require_name(name)
        with self._locked():
            sessions = self._load()
        session = sessions.get(name)
        if session is None:
            return None
        return dict(session) if isinstance(session, dict) else {"name": name}

    def set(self, name: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``fields`` into the named session, creating it when absent."""

        _require_name(name)
        with self._locked():
            sessions = self._load()
            current = sessions.get(name)
            session = dict(current) if isinstance(current, dict) else {}
            session["name"] = name
            for key, value in fields.items():
                if not key.strip():
                    continue
                session[key] = parse_value(value) if isinstance(value, str) else _plain(value)
            sessions[name] = session
            self._save(sessions)
        return dict(session)

    def list(self) -> list[dict[str, Any]]:
        with self._locked():
            sessions = self._load()
        result: list[dict[str, Any]] = []
        for name in sorted(sessions):
            value = sessions[name]
            session = dict(value) if isinstance(value, dict) else {}
            session["name"] = name
            result.append(session)
        return result

    def delete(self, name: str) -> None:
        _require_name(name)
        with self._locked():
            sessions = self._load()
            if name not in sessions:
                raise InvalidStateError(f"session '{name}' not found")
            del sessions[name]
            self._save(sessions)

    def cleanup_stale(self, mode: CleanupMode = CleanupMode.MARK) -> list[str]:
        """Mark or remove running sessions whose process has died."""

        with self._locked():
            sessions = self._load()
            cleaned: list[str] = []
            for name in sorted(sessions):
                session = sessions[name]
                if not isinstance(session, dict):
                    continue
                if session.get("status") != SessionStatus.RUNNING.value:
                    continue
                pid = session.get("pid")
                if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
                    continue
                if self.probe.is_alive(pid):
                    continue
                cleaned.append(name)
                if mode is CleanupMode.REMOVE:
                    del sessions[name]
                else:
                    sessions[name] = {**session, "status": SessionStatus.STALE.value}
            if cleaned:
                self._save(sessions)
                logger.info("Cleaned stale sessions (%s): %s", mode.value, ", ".join(cleaned))
        return cleaned

    def update(self, name: str, mutate: Callable[[dict[str, Any]], T]) -> T:
        """Apply ``mutate`` to a copy of the session under the lock and persist it."""

        _require_name(name)
        with self._locked():
            sessions = self._load()
            current = sessions.get(name)
            if current is None:
                raise InvalidStateError(f"session '{name}' not found")
            session = dict(current) if isinstance(current, dict) else {}
            result = mutate(session)
            session["name"] = name
            sessions[name] = session
            self._save(sessions)
        return result

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StateIoError(self.state_dir, error) from error
        try:
            handle = self.lock_file.open("a+", encoding="utf-8")
        except OSError as error:
            raise StateIoError(self.lock_file, error) from error
        try:
            self._acquire(handle)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _acquire(self, handle: Any) -> None:
        deadline = self._clock() + self.lock_timeout_seconds
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if self._clock() >= deadline:
                    raise LockTimeoutError(self.lock_file, self.lock_timeout_seconds) from None
                self._sleep(self.poll_interval_seconds)
            except OSError as error:
                raise StateIoError(self.lock_file, error) from error

    def _init_unlocked(self) -> None:
        if not self.state_file.exists():
            self._save({})
            return
        try:
            self._read()
        except (json.JSONDecodeError, UnicodeDecodeError, InvalidStateError):
            logger.warning("Resetting unreadable state file %s", self.state_file)
            self._save({})

    def _load(self) -> dict[str, Any]:
        self._init_unlocked()
        return self._read()

    def _read(self) -> dict[str, Any]:
        try:
            contents = self.state_file.read_text(encoding="utf-8")
        except OSError as error:
            raise StateIoError(self.state_file, error) from error
        document = json.loads(contents)
        if not isinstance(document, dict):
            raise InvalidStateError(f"state document is not an object: {self.state_file}")
        sessions = document.get("sessions")
        if not isinstance(sessions, dict):
            raise InvalidStateError(f"state document has no sessions map: {self.state_file}")
        return sessions

    def _save(self, sessions: dict[str, Any]) -> None:
        content = json.dumps({"sessions": sessions}, indent=2, sort_keys=True)
        if not content.strip():
            raise InvalidStateError("refusing to write empty state content")
        tmp_path = self.state_file.with_name(f"{self.state_file.name}.tmp.{os.getpid()}")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            raise StateIoError(tmp_path, error) from error
        try:
            os.replace(tmp_path, self.state_file)
        except OSError as error:
            raise StateIoError(self.state_file, error) from error


def parse_value(raw: str) -> Any:
    """Coerce a string field: ``true``/``false`` to bool, all-digit strings to int."""

    if raw == "":
        return ""
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw.isascii() and raw.isdigit():
        return int(raw)
    return raw


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


def _require_name(name: str) -> None:
    if not name or not name.strip():
        raise InvalidSessionNameError
