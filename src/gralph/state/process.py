"""Process liveness checks and termination helpers."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)


class ProcessProbe(Protocol):
    """Answers whether a pid still refers to a live process."""

    def is_alive(self, pid: int) -> bool: ...


class OsProcessProbe:
    """Probe backed by signal 0; a process owned by another user counts as alive."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True


class ProcessController:
    """Stops loop processes by pid or by tmux session name."""

    def terminate_pid(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        except OSError as error:
            logger.warning("Failed to signal pid %s: %s", pid, error)
            return False
        return True

    def kill_tmux_session(self, name: str) -> bool:
        if not name or shutil.which("tmux") is None:
            return False
        result = subprocess.run(  # noqa: S603
            ["tmux", "kill-session", "-t", name],  # noqa: S607
            check=False,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            logger.warning("tmux kill-session %s failed: %s", name, result.stderr.strip())
            return False
        return True
