"""Iteration driver for the agent loop."""

from __future__ import annotations

import logging
import os
import queue
import shutil
import sys
import tempfile
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TextIO

from gralph.backend.base import BackendAdapter, BackendError
from gralph.core.completion import check_completion
from gralph.core.errors import BackendFailure, CoreIoError, InvalidInputError
from gralph.core.models import LoopOutcome, LoopStatus, ProgressEvent, ProgressSink
from gralph.core.prompts import (
    normalize_context_files,
    render_prompt_template,
    resolve_prompt_template,
)
from gralph.core.tasks import count_remaining_tasks, first_unchecked_line, next_unchecked_block

logger = logging.getLogger(__name__)

DEFAULT_TASK_FILE = "PRD.md"
DEFAULT_MAX_ITERATIONS = 30
DEFAULT_COMPLETION_MARKER = "COMPLETE"
DEFAULT_LOG_RETAIN_DAYS = 7
LOG_DIR_NAME = ".gralph"
OUTPUT_FILE_PREFIX = "gralph-iteration"
OUTPUT_FILE_ATTEMPTS = 10


@dataclass(slots=True)
class LoopRequest:
    """Parameters of one loop run."""

    project_dir: Path
    task_file: str = DEFAULT_TASK_FILE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    model: str | None = None
    variant: str | None = None
    session_name: str | None = None
    prompt_template: str | None = None
    prompt_template_file: Path | None = None
    context_files: tuple[str, ...] = ()
    log_retain_days: int = DEFAULT_LOG_RETAIN_DAYS

    @property
    def task_path(self) -> Path:
        return self.project_dir / self.task_file

    @property
    def log_dir(self) -> Path:
        return self.project_dir / LOG_DIR_NAME

    @property
    def log_file(self) -> Path:
        return self.log_dir / f"{self.session_name or 'gralph'}.log"


@dataclass(slots=True)
class IterationResult:
    """Parsed agent answer for one iteration."""

    result: str
    raw_output_file: Path | None


class SessionLog:
    """Append-only plain-text session log mirrored to a console stream."""

    def __init__(self, path: Path | None, *, stream: TextIO | None = None, echo: bool = True):
        self.path = path
        self._stream = stream
        self._echo = echo

    def write(self, message: str = "") -> None:
        if self._echo:
            print(message, file=self._stream or sys.stdout, flush=True)
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{message}\n")
        except OSError as error:
            raise CoreIoError(self.path, error) from error


class QueueProgressSink:
    """Progress sink that forwards events into a queue for another thread."""

    def __init__(self, events: queue.Queue[ProgressEvent] | None = None) -> None:
        self.events: queue.Queue[ProgressEvent] = events if events is not None else queue.Queue()

    def __call__(self, event: ProgressEvent) -> None:
        self.events.put(event)

    def drain(self) -> list[ProgressEvent]:
        drained: list[ProgressEvent] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained


class LoopEngine:
    """Runs a backend against a task file until completion or the iteration budget."""

    def __init__(
        self,
        backend: BackendAdapter,
        *,
        iteration_delay_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        output_dir: Path | None = None,
        stream: TextIO | None = None,
        echo: bool = True,
    ) -> None:
        self.backend = backend
        self.iteration_delay_seconds = iteration_delay_seconds
        self._sleep = sleep
        self._output_dir = output_dir
        self._stream = stream
        self._echo = echo

    def run_iteration(
        self,
        request: LoopRequest,
        iteration: int,
        *,
        log: SessionLog | None = None,
    ) -> IterationResult:
        """Render the prompt, invoke the backend once and return its parsed answer."""

        log = log or SessionLog(None, stream=self._stream, echo=self._echo)
        if iteration <= 0:
            raise InvalidInputError("iteration number is required")
        if request.max_iterations <= 0:
            raise InvalidInputError("max_iterations is required")
        if not request.project_dir.is_dir():
            raise InvalidInputError(f"project directory does not exist: {request.project_dir}")
        task_path = request.task_path
        if not task_path.is_file():
            raise InvalidInputError(f"task file does not exist: {task_path}")
        if not self.backend.check_installed():
            raise InvalidInputError("backend is not installed")

        prompt = self._render_prompt(request, iteration)
        raw_output_file = raw_log_path(log.path) if log.path is not None else None
        output_path = create_output_file(self._output_dir)
        try:
            return self._invoke_backend(
                prompt=prompt,
                request=request,
                output_path=output_path,
                raw_output_file=raw_output_file,
                log=log,
            )
        finally:
            with suppress(OSError):
                output_path.unlink(missing_ok=True)

    def run_loop(
        self,
        request: LoopRequest,
        progress: ProgressSink | None = None,
    ) -> LoopOutcome:
        """Drive iterations until the completion promise or ``max_iterations``."""

        if request.max_iterations <= 0:
            raise InvalidInputError("max_iterations must be a positive integer")
        try:
            project_dir = request.project_dir.resolve(strict=True)
        except OSError as error:
            raise InvalidInputError(
                f"project directory does not exist: {request.project_dir}",
            ) from error
        if not project_dir.is_dir():
            raise InvalidInputError(f"project directory does not exist: {project_dir}")
        request = replace(request, project_dir=project_dir)
        task_path = request.task_path
        if not task_path.is_file():
            raise InvalidInputError(f"task file does not exist: {task_path}")

        try:
            request.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise CoreIoError(request.log_dir, error) from error
        cleanup_old_logs(request.log_dir, request.log_retain_days)

        log = SessionLog(request.log_file, stream=self._stream, echo=self._echo)
        started = time.monotonic()
        iteration = 1
        remaining = 0
        try:
            self._write_header(log, request)
            for iteration in range(1, request.max_iterations + 1):
                remaining = count_remaining_tasks(task_path)
                log.write()
                log.write(
                    f"=== Iteration {iteration}/{request.max_iterations} "
                    f"(Remaining: {remaining}) ===",
                )
                self._emit(progress, request, iteration, LoopStatus.RUNNING, remaining)
                if remaining == 0:
                    log.write("Zero tasks remaining before iteration, verifying completion...")

                iteration_result = self.run_iteration(request, iteration, log=log)
                if check_completion(
                    task_path,
                    iteration_result.result,
                    request.completion_marker,
                ):
                    duration = int(time.monotonic() - started)
                    log.write()
                    log.write(f"Gralph complete after {iteration} iterations.")
                    log.write(f"Duration: {format_duration(duration)}")
                    log.write(f"FINISHED: {format_timestamp()}")
                    self._emit(progress, request, iteration, LoopStatus.COMPLETE, 0)
                    return LoopOutcome(
                        status=LoopStatus.COMPLETE,
                        iterations=iteration,
                        remaining_tasks=0,
                        duration_secs=duration,
                    )

                remaining = count_remaining_tasks(task_path)
                log.write(f"Tasks remaining after iteration: {remaining}")
                self._emit(progress, request, iteration, LoopStatus.RUNNING, remaining)
                if iteration < request.max_iterations:
                    self._sleep(self.iteration_delay_seconds)

            remaining = count_remaining_tasks(task_path)
            duration = int(time.monotonic() - started)
            log.write()
            log.write(f"Hit max iterations ({request.max_iterations})")
            log.write(f"Remaining tasks: {remaining}")
            log.write(f"Duration: {format_duration(duration)}")
            log.write(f"FINISHED: {format_timestamp()}")
        except Exception as error:
            self._emit(progress, request, iteration, LoopStatus.FAILED, remaining)
            _log_failure(log, error)
            raise

        self._emit(
            progress,
            request,
            request.max_iterations,
            LoopStatus.MAX_ITERATIONS,
            remaining,
        )
        return LoopOutcome(
            status=LoopStatus.MAX_ITERATIONS,
            iterations=request.max_iterations,
            remaining_tasks=remaining,
            duration_secs=duration,
        )

    @staticmethod
    def _write_header(log: SessionLog, request: LoopRequest) -> None:
        log.write(f"Starting gralph loop in {request.project_dir}")
        log.write(f"Task file: {request.task_file}")
        log.write(f"Max iterations: {request.max_iterations}")
        log.write(f"Completion marker: {request.completion_marker}")
        if request.model:
            log.write(f"Model: {request.model}")
        if request.variant:
            log.write(f"Variant: {request.variant}")
        log.write(f"Started at: {format_timestamp()}")
        log.write(f"Initial remaining tasks: {count_remaining_tasks(request.task_path)}")

    def _render_prompt(self, request: LoopRequest, iteration: int) -> str:
        template = resolve_prompt_template(
            request.project_dir,
            override=request.prompt_template,
            template_file=request.prompt_template_file,
        )
        task_path = request.task_path
        task_block = next_unchecked_block(task_path)
        if task_block is None and count_remaining_tasks(task_path) > 0:
            task_block = first_unchecked_line(task_path)
        return render_prompt_template(
            template,
            task_file=request.task_file,
            completion_marker=request.completion_marker,
            iteration=iteration,
            max_iterations=request.max_iterations,
            task_block=task_block,
            context_files=normalize_context_files(request.context_files),
        )

    def _invoke_backend(
        self,
        *,
        prompt: str,
        request: LoopRequest,
        output_path: Path,
        raw_output_file: Path | None,
        log: SessionLog,
    ) -> IterationResult:
        backend_error: BackendError | None = None
        try:
            self.backend.run_iteration(
                prompt,
                request.model,
                request.variant,
                output_path,
                request.project_dir,
            )
        except BackendError as error:
            backend_error = error

        if raw_output_file is not None and output_path.is_file():
            try:
                shutil.copyfile(output_path, raw_output_file)
            except OSError as error:
                logger.warning("Failed to copy raw output to %s: %s", raw_output_file, error)
                log.write(f"Warning: failed to copy raw output: {error}")

        output_empty = _file_size(output_path) == 0
        if backend_error is not None:
            if output_empty and raw_output_file is not None:
                log.write(f"Raw output saved to: {raw_output_file}")
            raise BackendFailure(
                f"backend error: {backend_error}",
                raw_log=raw_output_file,
            ) from backend_error

        if output_empty:
            log.write("Error: backend produced no JSON output.")
            if raw_output_file is not None:
                log.write(f"Raw output saved to: {raw_output_file}")
            raise InvalidInputError("backend produced no output")

        try:
            result = self.backend.parse_text(output_path)
        except BackendError as error:
            raise BackendFailure(f"backend error: {error}", raw_log=raw_output_file) from error
        if not result.strip():
            log.write("Error: backend returned no parsed result.")
            if raw_output_file is not None:
                log.write(f"Raw output saved to: {raw_output_file}")
            raise InvalidInputError("backend returned no parsed result")

        return IterationResult(result=result, raw_output_file=raw_output_file)

    @staticmethod
    def _emit(  # noqa: PLR0913
        progress: ProgressSink | None,
        request: LoopRequest,
        iteration: int,
        status: LoopStatus,
        remaining: int,
    ) -> None:
        if progress is None:
            return
        event = ProgressEvent(
            session_name=request.session_name,
            iteration=iteration,
            status=status,
            remaining=remaining,
        )
        try:
            progress(event)
        except Exception:  # noqa: BLE001
            logger.exception("Progress sink failed for %s", event)


def raw_log_path(log_file: Path) -> Path:
    """Sibling file that keeps the raw backend output: ``x.log`` -> ``x.raw.log``."""

    name = log_file.name
    if name.endswith(".log"):
        return log_file.with_name(f"{name[: -len('.log')]}.raw.log")
    return log_file.with_name(f"{name}.raw.log")


def create_output_file(directory: Path | None = None, prefix: str = OUTPUT_FILE_PREFIX) -> Path:
    """Create a new empty file with exclusive-create semantics."""

    base_dir = directory or Path(tempfile.gettempdir())
    for attempt in range(OUTPUT_FILE_ATTEMPTS):
        path = base_dir / f"{prefix}-{os.getpid()}-{int(time.time())}-{attempt}.tmp"
        try:
            with path.open("x", encoding="utf-8"):
                pass
        except FileExistsError:
            continue
        except OSError as error:
            raise CoreIoError(path, error) from error
        return path
    raise InvalidInputError("failed to create temp file")


def cleanup_old_logs(
    log_dir: Path,
    retain_days: int,
    *,
    now: datetime | None = None,
) -> list[Path]:
    """Delete ``*.log`` files older than ``retain_days``; 0 keeps everything."""

    if retain_days <= 0 or not log_dir.is_dir():
        return []
    cutoff = ((now or datetime.now()) - timedelta(days=retain_days)).timestamp()
    removed: list[Path] = []
    for path in sorted(log_dir.glob("*.log")):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError as error:
            logger.warning("Failed to prune old log %s: %s", path, error)
    if removed:
        logger.info("Pruned %d old log file(s) in %s", len(removed), log_dir)
    return removed


def format_duration(duration_secs: int) -> str:
    hours, rest = divmod(duration_secs, 3600)
    minutes, seconds = divmod(rest, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes or hours:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return f"{' '.join(parts)} ({duration_secs}s)"


def format_timestamp(moment: datetime | None = None) -> str:
    return (moment or datetime.now()).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _log_failure(log: SessionLog, error: Exception) -> None:
    try:
        log.write(f"Iteration failed: {error}")
    except CoreIoError as log_error:
        logger.warning("Failed to write session log %s: %s", log.path, log_error)
