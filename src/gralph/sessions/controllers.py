"""Controllers for session CLI commands."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from gralph.backend import SUPPORTED_BACKENDS, BackendAdapter, BackendError, backend_from_name
from gralph.config import ConfigError, Settings
from gralph.core import CoreError, LoopEngine, LoopOutcome, LoopRequest, LoopStatus, ProgressEvent
from gralph.core.tasks import count_remaining_tasks
from gralph.notify import (
    CompletionNotice,
    FailureNotice,
    FailureReason,
    NotifyError,
    WebhookNotifier,
)
from gralph.state import (
    RESUMABLE_STATUSES,
    CleanupMode,
    OsProcessProbe,
    ProcessController,
    ProcessProbe,
    SessionRecord,
    SessionStatus,
    StateError,
    StateStore,
)
from gralph.verifier import VerificationError, Verifier

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "gralph"
DEFAULT_LOG_LINES = 200
FOLLOW_POLL_SECONDS = 0.5

Spawner = Callable[[list[str]], int]


class SessionCommandError(RuntimeError):
    """User-facing failure of a session command."""


@dataclass(slots=True)
class StartCommand:
    """CLI input for starting or running a loop."""

    dir: Path
    name: str | None = None
    max_iterations: int | None = None
    task_file: str | None = None
    completion_marker: str | None = None
    backend: str | None = None
    model: str | None = None
    variant: str | None = None
    prompt_template: Path | None = None
    webhook: str | None = None
    foreground: bool = False


@dataclass(slots=True)
class StopCommand:
    """CLI input for stopping one or all sessions."""

    name: str | None
    all: bool = False


@dataclass(slots=True)
class LogsCommand:
    name: str
    lines: int = DEFAULT_LOG_LINES
    follow: bool = False


@dataclass(slots=True)
class ResumeCommand:
    name: str | None = None


@dataclass(slots=True)
class ResolvedLoop:
    """Effective loop parameters after applying config defaults."""

    name: str
    dir: Path
    task_file: str
    max_iterations: int
    completion_marker: str
    backend: str
    model: str | None
    variant: str | None
    prompt_template: str | None
    webhook: str | None


class StoreProgressSink:
    """Mirrors loop progress into the session record; store errors never stop the loop."""

    def __init__(self, store: StateStore, default_name: str) -> None:
        self._store = store
        self._default_name = default_name

    def __call__(self, event: ProgressEvent) -> None:
        name = event.session_name or self._default_name
        try:
            self._store.set(
                name,
                {
                    "iteration": event.iteration,
                    "status": event.status.value,
                    "last_task_count": event.remaining,
                },
            )
        except StateError as error:
            logger.warning("Failed to record progress for %s: %s", name, error)


class SessionCliController:
    """Coordinates loop sessions: start, run, stop, status, resume and logs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        probe: ProcessProbe | None = None,
        processes: ProcessController | None = None,
        spawner: Spawner | None = None,
        backend_factory: Callable[..., BackendAdapter] = backend_from_name,
        iteration_delay_seconds: float = 2.0,
        webhook_transport: Any = None,
    ) -> None:
        self.probe: ProcessProbe = probe or OsProcessProbe()
        self.processes = processes or ProcessController()
        self.spawner: Spawner = spawner or spawn_detached
        self.backend_factory = backend_factory
        self.iteration_delay_seconds = iteration_delay_seconds
        self.webhook_transport = webhook_transport

    def start(self, command: StartCommand) -> list[str]:
        """Start a loop in the background, or run it inline with ``foreground``."""

        if not command.dir.is_dir():
            raise SessionCommandError(f"Directory does not exist: {command.dir}")
        if command.foreground:
            return self.run_loop(command)

        settings = _load_settings(command.dir)
        name = session_name(command.name, command.dir)
        project_dir = command.dir.resolve()
        pid = self._spawn_loop(project_dir, name, command)

        task_file = command.task_file or settings.defaults.task_file
        record = SessionRecord(
            name=name,
            dir=str(project_dir),
            task_file=task_file,
            pid=pid,
            tmux_session="",
            started_at=_now_rfc3339(),
            iteration=1,
            max_iterations=command.max_iterations or settings.defaults.max_iterations,
            status=SessionStatus.RUNNING,
            last_task_count=count_remaining_tasks(project_dir / task_file),
            completion_marker=command.completion_marker or settings.defaults.completion_marker,
            log_file=str(project_dir / ".gralph" / f"{name}.log"),
            backend=command.backend or settings.defaults.backend,
            model=command.model or "",
            variant=command.variant or "",
            webhook=command.webhook or "",
        )
        with state_errors():
            self._store(settings).set(name, record.to_fields())
        return [
            f"Gralph loop started in background (PID: {pid}).",
            f"Session: {name}",
            f"Log: {record.log_file}",
        ]

    def run_loop(self, command: StartCommand) -> list[str]:  # noqa: C901
        """Run a loop in this process, keeping the session record current."""

        if not command.dir.is_dir():
            raise SessionCommandError(f"Directory does not exist: {command.dir}")
        settings = _load_settings(command.dir)
        resolved = resolve_loop(command, settings)
        backend = self._backend(resolved.backend, settings)
        if not backend.check_installed():
            raise SessionCommandError(f"Backend is not installed: {resolved.backend}")

        store = self._store(settings)
        record = SessionRecord(
            name=resolved.name,
            dir=str(resolved.dir),
            task_file=resolved.task_file,
            pid=os.getpid(),
            tmux_session="",
            started_at=_now_rfc3339(),
            iteration=1,
            max_iterations=resolved.max_iterations,
            status=SessionStatus.RUNNING,
            last_task_count=count_remaining_tasks(resolved.dir / resolved.task_file),
            completion_marker=resolved.completion_marker,
            log_file=str(resolved.dir / ".gralph" / f"{resolved.name}.log"),
            backend=resolved.backend,
            model=resolved.model or "",
            variant=resolved.variant or "",
            webhook=resolved.webhook or "",
        )
        with state_errors():
            store.set(resolved.name, record.to_fields())

        engine = LoopEngine(backend, iteration_delay_seconds=self.iteration_delay_seconds)
        request = LoopRequest(
            project_dir=resolved.dir,
            task_file=resolved.task_file,
            max_iterations=resolved.max_iterations,
            completion_marker=resolved.completion_marker,
            model=resolved.model,
            variant=resolved.variant,
            session_name=resolved.name,
            prompt_template=resolved.prompt_template,
            prompt_template_file=settings.defaults.prompt_template_file,
            context_files=settings.defaults.context_files,
            log_retain_days=settings.defaults.log_retain_days,
        )
        started = time.monotonic()
        try:
            outcome = engine.run_loop(request, StoreProgressSink(store, resolved.name))
        except CoreError as error:
            with state_errors():
                store.set(resolved.name, {"status": SessionStatus.FAILED.value})
            self._notify(
                settings,
                resolved,
                LoopOutcome(
                    status=LoopStatus.FAILED,
                    iterations=_session_iteration(store, resolved.name),
                    remaining_tasks=count_remaining_tasks(resolved.dir / resolved.task_file),
                    duration_secs=int(time.monotonic() - started),
                ),
            )
            raise SessionCommandError(f"Loop failed: {error}") from error

        with state_errors():
            store.set(
                resolved.name,
                {"status": outcome.status.value, "last_task_count": outcome.remaining_tasks},
            )

        lines = [
            "Loop summary: "
            f"status={outcome.status.value} iterations={outcome.iterations} "
            f"remaining={outcome.remaining_tasks} duration={outcome.duration_secs}s",
        ]
        if outcome.status is LoopStatus.COMPLETE and settings.verifier.auto_run:
            lines.extend(self._verify(store, settings, resolved))
        self._notify(settings, resolved, outcome)
        return lines

    def stop(self, command: StopCommand) -> list[str]:
        settings = _load_settings(None)
        store = self._store(settings)
        with state_errors():
            if command.all:
                for session in store.list():
                    if session.get("status") == SessionStatus.RUNNING.value:
                        self._stop_session(store, session)
                return ["Stopped running sessions."]

            if not command.name:
                raise SessionCommandError("Session name is required.")
            session = store.get(command.name)
            if session is None:
                raise SessionCommandError(f"Session not found: {command.name}")
            self._stop_session(store, session)
        return [f"Stopped session: {command.name}"]

    def status(self) -> list[str]:
        settings = _load_settings(None)
        store = self._store(settings)
        with state_errors():
            store.cleanup_stale(CleanupMode.MARK)
            sessions = store.list()
        if not sessions:
            return ["No sessions found."]

        rows = []
        for session in sessions:
            record = SessionRecord.from_mapping(session)
            rows.append(
                [
                    record.name,
                    record.dir or "",
                    f"{record.iteration or 0}/{record.max_iterations or 0}",
                    record.status_text,
                    str(_live_remaining(record)),
                ],
            )
        return render_table(["NAME", "DIR", "ITERATION", "STATUS", "REMAINING"], rows)

    def resume(self, command: ResumeCommand) -> list[str]:
        settings = _load_settings(None)
        store = self._store(settings)
        with state_errors():
            sessions = store.list()

        resumed = 0
        for session in sessions:
            record = SessionRecord.from_mapping(session)
            if command.name and record.name != command.name:
                continue
            if not self.should_resume(record):
                continue
            if not record.dir:
                raise SessionCommandError(f"Missing dir for session {record.name}")
            pid = self._spawn_loop(
                Path(record.dir),
                record.name,
                StartCommand(
                    dir=Path(record.dir),
                    name=record.name,
                    max_iterations=record.max_iterations,
                    task_file=record.task_file or None,
                    completion_marker=record.completion_marker or None,
                    backend=record.backend or None,
                    model=record.model or None,
                    variant=record.variant or None,
                    webhook=record.webhook or None,
                ),
            )
            with state_errors():
                store.set(record.name, {"pid": pid, "status": SessionStatus.RUNNING.value})
            resumed += 1

        if resumed == 0:
            return ["No sessions to resume."]
        return [f"Resumed {resumed} session(s)."]

    def should_resume(self, record: SessionRecord) -> bool:
        if record.status in RESUMABLE_STATUSES:
            return True
        if record.status is SessionStatus.RUNNING:
            pid = record.pid or 0
            return pid <= 0 or not self.probe.is_alive(pid)
        return False

    def logs(self, command: LogsCommand) -> list[str]:
        log_file = self._log_file(command.name)
        lines = log_file.read_text(encoding="utf-8", errors="replace").splitlines()
        return lines[-command.lines :] if command.lines > 0 else lines

    def follow_logs(
        self,
        command: LogsCommand,
        emit: Callable[[str], None],
        *,
        should_stop: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Print the tail, then stream appended text until ``should_stop`` says so."""

        log_file = self._log_file(command.name)
        for line in self.logs(command):
            emit(line)
        for chunk in follow_file(log_file, should_stop=should_stop, sleep=sleep):
            emit(chunk)

    def backends(self) -> list[str]:
        settings = _load_settings(None)
        lines = []
        for name in SUPPORTED_BACKENDS:
            backend = self._backend(name, settings)
            state = "installed" if backend.check_installed() else "not installed"
            lines.append(f"{name} ({state}): {', '.join(backend.get_models())}")
        return lines

    def _store(self, settings: Settings) -> StateStore:
        return StateStore.from_settings(settings.store, probe=self.probe)

    def _backend(self, name: str, settings: Settings) -> BackendAdapter:
        try:
            return self.backend_factory(name, command=settings.defaults.backend_commands.get(name))
        except BackendError as error:
            raise SessionCommandError(str(error)) from error

    def _spawn_loop(self, project_dir: Path, name: str, command: StartCommand) -> int:
        args = run_loop_args(project_dir, name, command)
        try:
            return self.spawner(args)
        except OSError as error:
            raise SessionCommandError(f"Failed to start loop: {error}") from error

    def _stop_session(self, store: StateStore, session: dict[str, Any]) -> None:
        record = SessionRecord.from_mapping(session)
        if record.tmux_session and record.tmux_session.strip():
            self.processes.kill_tmux_session(record.tmux_session)
        if record.pid:
            self.processes.terminate_pid(record.pid)
        store.set(
            record.name,
            {"status": SessionStatus.STOPPED.value, "pid": 0, "tmux_session": ""},
        )

    def _log_file(self, name: str) -> Path:
        settings = _load_settings(None)
        with state_errors():
            session = self._store(settings).get(name)
        if session is None:
            raise SessionCommandError(f"Session not found: {name}")
        log_file = resolve_log_file(SessionRecord.from_mapping(session))
        if not log_file.is_file():
            raise SessionCommandError(f"Log file does not exist: {log_file}")
        return log_file

    def _verify(self, store: StateStore, settings: Settings, resolved: ResolvedLoop) -> list[str]:
        with state_errors():
            store.set(
                resolved.name,
                {"status": SessionStatus.VERIFYING.value, "last_task_count": 0},
            )
        try:
            checks = Verifier(settings.verifier.commands).run(resolved.dir)
        except VerificationError as error:
            with state_errors():
                store.set(resolved.name, {"status": SessionStatus.VERIFY_FAILED.value})
            raise SessionCommandError(f"Verification failed: {error}") from error
        with state_errors():
            store.set(
                resolved.name,
                {"status": SessionStatus.VERIFIED.value, "last_task_count": 0},
            )
        return [f"Verified: {check.command}" for check in checks]

    def _notify(self, settings: Settings, resolved: ResolvedLoop, outcome: LoopOutcome) -> None:
        webhook = resolved.webhook or settings.notifications.webhook
        if not webhook:
            return
        try:
            notifier = WebhookNotifier(
                webhook,
                timeout_seconds=settings.notifications.timeout_seconds,
                transport=self.webhook_transport,
            )
            if outcome.status is LoopStatus.COMPLETE:
                if settings.notifications.on_complete:
                    notifier.notify_complete(
                        CompletionNotice(
                            session_name=resolved.name,
                            project_dir=str(resolved.dir),
                            iterations=outcome.iterations,
                            duration_secs=outcome.duration_secs,
                        ),
                    )
                return
            reason = (
                FailureReason.MAX_ITERATIONS
                if outcome.status is LoopStatus.MAX_ITERATIONS
                else FailureReason.ERROR
            )
            notifier.notify_failed(
                FailureNotice(
                    session_name=resolved.name,
                    reason=reason.value,
                    project_dir=str(resolved.dir),
                    iterations=outcome.iterations,
                    max_iterations=resolved.max_iterations,
                    remaining_tasks=outcome.remaining_tasks,
                    duration_secs=outcome.duration_secs,
                ),
            )
        except NotifyError as error:
            logger.warning("Webhook notification for %s failed: %s", resolved.name, error)


def sanitize_session_name(name: str) -> str:
    return "".join(ch if (ch.isascii() and ch.isalnum()) or ch in "-_" else "-" for ch in name)


def session_name(name: str | None, project_dir: Path) -> str:
    """Explicit name (sanitized) or the project directory's basename."""

    if name is not None:
        return sanitize_session_name(name) or DEFAULT_SESSION_NAME
    try:
        base = project_dir.resolve(strict=True).name
    except OSError:
        base = project_dir.name
    return sanitize_session_name(base) or DEFAULT_SESSION_NAME


def resolve_loop(command: StartCommand, settings: Settings) -> ResolvedLoop:
    """Apply precedence: command line, then config, then built-in defaults."""

    defaults = settings.defaults
    backend = command.backend or defaults.backend
    model = command.model or defaults.model
    if not model and backend == "opencode":
        model = defaults.opencode_default_model
    max_iterations = command.max_iterations or defaults.max_iterations
    if max_iterations <= 0:
        raise SessionCommandError("max_iterations must be a positive integer.")

    prompt_template = None
    if command.prompt_template is not None:
        try:
            prompt_template = command.prompt_template.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise SessionCommandError(
                f"Failed to read prompt template {command.prompt_template}: {error}",
            ) from error

    return ResolvedLoop(
        name=session_name(command.name, command.dir),
        dir=command.dir.resolve(),
        task_file=command.task_file or defaults.task_file,
        max_iterations=max_iterations,
        completion_marker=command.completion_marker or defaults.completion_marker,
        backend=backend,
        model=model or None,
        variant=command.variant or defaults.variant,
        prompt_template=prompt_template,
        webhook=command.webhook,
    )


def run_loop_args(project_dir: Path, name: str, command: StartCommand) -> list[str]:
    """Command line that re-enters this CLI as a detached ``run-loop``."""

    args = [sys.executable, "-m", "gralph", "run-loop", str(project_dir), "--name", name]
    options: Sequence[tuple[str, object]] = (
        ("--max-iterations", command.max_iterations),
        ("--task-file", command.task_file),
        ("--completion-marker", command.completion_marker),
        ("--backend", command.backend),
        ("--model", command.model),
        ("--variant", command.variant),
        ("--prompt-template", command.prompt_template),
        ("--webhook", command.webhook),
    )
    for flag, value in options:
        if value is not None and value != "":
            args.extend([flag, str(value)])
    return args


def spawn_detached(args: list[str]) -> int:
    process = subprocess.Popen(  # noqa: S603
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.info("Spawned background loop pid=%s", process.pid)
    return process.pid


def resolve_log_file(record: SessionRecord) -> Path:
    if record.log_file and record.log_file.strip():
        return Path(record.log_file)
    if not record.dir:
        raise SessionCommandError(f"Missing dir for session {record.name}")
    return Path(record.dir) / ".gralph" / f"{record.name}.log"


def follow_file(
    path: Path,
    *,
    should_stop: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    poll_seconds: float = FOLLOW_POLL_SECONDS,
) -> Iterator[str]:
    """Yield text appended to ``path`` after the call, polling until ``should_stop``."""

    with path.open("r", encoding="utf-8", errors="replace") as handle:
        handle.seek(0, 2)
        while True:
            chunk = handle.read()
            if chunk:
                yield chunk.rstrip("\n")
            if should_stop is not None and should_stop():
                return
            sleep(poll_seconds)


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> list[str]:
    widths = [len(header) for header in headers]
    for row in rows:
        for index, column in enumerate(row):
            widths[index] = max(widths[index], len(column))

    def _line(values: Sequence[str]) -> str:
        return "  ".join(value.ljust(widths[index]) for index, value in enumerate(values)).rstrip()

    return [
        _line(headers),
        _line(["-" * width for width in widths]),
        *(_line(row) for row in rows),
    ]


def _live_remaining(record: SessionRecord) -> int:
    if not record.dir:
        return record.last_task_count or 0
    return count_remaining_tasks(Path(record.dir) / (record.task_file or "PRD.md"))


def _session_iteration(store: StateStore, name: str) -> int:
    try:
        session = store.get(name) or {}
    except StateError:
        return 0
    return SessionRecord.from_mapping(session).iteration or 0


def _load_settings(project_dir: Path | None) -> Settings:
    try:
        settings = Settings.from_env(project_dir)
        settings.validate()
    except ConfigError as error:
        raise SessionCommandError(str(error)) from error
    return settings


@contextmanager
def state_errors() -> Iterator[None]:
    """Re-raise state store failures as user-facing command errors."""

    try:
        yield
    except StateError as error:
        raise SessionCommandError(str(error)) from error


def _now_rfc3339() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")
