"""Subprocess plumbing shared by coding-agent CLI adapters."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import TextIO

from gralph.backend.base import BackendError

logger = logging.getLogger(__name__)


def command_available(command: Sequence[str]) -> bool:
    """Return whether the executable at the head of ``command`` resolves on PATH."""

    if not command:
        return False
    return shutil.which(command[0]) is not None


def stream_command_output(
    args: Sequence[str],
    *,
    cwd: Path,
    label: str,
    on_line: Callable[[str], None],
    env: Mapping[str, str] | None = None,
) -> None:
    """Run ``args`` and hand every stdout/stderr line to ``on_line`` as it arrives.

    stderr is merged into stdout so the callback sees lines in emission order.
    A non-zero exit raises :class:`BackendError`. If the callback raises, the
    child is terminated and the error propagates.
    """

    run_env = os.environ.copy()
    if env:
        run_env.update(env)
    try:
        process = subprocess.Popen(  # noqa: S603
            list(args),
            cwd=cwd,
            env=run_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as error:
        raise BackendError(f"failed to spawn {label}: {error}") from error

    stdout = process.stdout
    if stdout is None:
        _terminate_process(process)
        raise BackendError(f"{label} has no output pipe")
    try:
        for line in stdout:
            on_line(line)
    except BaseException:
        _terminate_process(process)
        raise
    finally:
        stdout.close()

    returncode = process.wait()
    if returncode != 0:
        raise BackendError(f"{label} exited with status {returncode}")


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


class CliAgentBackend:
    """Base adapter: runs an agent command and tees its output to a file and console."""

    name = "cli"
    default_command: tuple[str, ...] = ()
    models: tuple[str, ...] = ()
    extra_env: Mapping[str, str] = {}

    def __init__(
        self,
        command: Sequence[str] | None = None,
        *,
        stream: TextIO | None = None,
    ) -> None:
        self.command: tuple[str, ...] = tuple(command) if command else self.default_command
        self._stream = stream

    def check_installed(self) -> bool:
        return command_available(self.command)

    def build_args(self, prompt: str, model: str | None, variant: str | None) -> list[str]:
        raise NotImplementedError

    def run_iteration(  # noqa: PLR0913
        self,
        prompt: str,
        model: str | None,
        variant: str | None,
        output_path: Path,
        working_dir: Path,
    ) -> None:
        if not prompt.strip():
            raise BackendError("prompt is required")

        args = [*self.command, *self.build_args(prompt, model, variant)]
        logger.info("Running %s backend in %s", self.name, working_dir)
        try:
            with output_path.open("w", encoding="utf-8") as output:
                stream_command_output(
                    args,
                    cwd=working_dir,
                    label=self.name,
                    env=self.extra_env,
                    on_line=lambda line: self.handle_line(line, output),
                )
        except OSError as error:
            raise BackendError(f"backend io error at {output_path}: {error}") from error

    def handle_line(self, line: str, output: TextIO) -> None:
        """Default handling: keep every line and mirror it to the console."""

        output.write(line)
        output.flush()
        self.echo(line.rstrip("\r\n"))

    def parse_text(self, output_path: Path) -> str:
        try:
            return output_path.read_text(encoding="utf-8")
        except OSError as error:
            raise BackendError(f"backend io error at {output_path}: {error}") from error

    def get_models(self) -> list[str]:
        return list(self.models)

    def echo(self, text: str) -> None:
        stream = self._stream or sys.stdout
        stream.write(f"{text}\n")
        stream.flush()


def optional_flag(flag: str, value: str | None) -> list[str]:
    if value is None or not value.strip():
        return []
    return [flag, value]
