"""Post-completion verification: run project checks once the loop reports done."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class VerificationError(RuntimeError):
    """A verification command could not run or exited non-zero."""


@dataclass(slots=True)
class CommandCheck:
    command: str
    exit_code: int
    output: str


class Verifier:
    """Runs each configured command in the project directory, stopping at the first failure."""

    def __init__(self, commands: Sequence[str], *, timeout_seconds: float | None = None) -> None:
        self.commands = tuple(command for command in commands if command.strip())
        self.timeout_seconds = timeout_seconds

    def run(self, project_dir: Path) -> list[CommandCheck]:
        if not self.commands:
            raise VerificationError("No verifier commands configured (verifier.commands).")

        checks: list[CommandCheck] = []
        for command in self.commands:
            try:
                argv = shlex.split(command)
            except ValueError as error:
                raise VerificationError(f"Invalid verifier command {command!r}: {error}") from error
            logger.info("Verifier running %r in %s", command, project_dir)
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    cwd=project_dir,
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=self.timeout_seconds,
                )
            except (OSError, subprocess.TimeoutExpired) as error:
                raise VerificationError(f"{command} failed to run: {error}") from error

            check = CommandCheck(
                command=command,
                exit_code=completed.returncode,
                output=(completed.stdout + completed.stderr).strip(),
            )
            checks.append(check)
            if check.exit_code != 0:
                raise VerificationError(f"{command} failed with status {check.exit_code}.")
        return checks
