"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from gralph.backend import BackendError

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND = f"{shlex.quote(sys.executable)} -m gralph.backend.echo_agent"


class FakeBackend:
    """Scripted backend: each iteration writes the next scripted output."""

    name = "fake"

    def __init__(
        self,
        outputs: list[str] | None = None,
        *,
        error: str | None = None,
        installed: bool = True,
        on_run: Callable[[Path], None] | None = None,
    ) -> None:
        self.outputs = list(outputs or [])
        self.error = error
        self.installed = installed
        self.on_run = on_run
        self.prompts: list[str] = []
        self.calls = 0

    def check_installed(self) -> bool:
        return self.installed

    def run_iteration(self, prompt, model, variant, output_path, working_dir) -> None:  # noqa: ANN001, PLR0913
        self.calls += 1
        self.prompts.append(prompt)
        if self.on_run is not None:
            self.on_run(working_dir)
        if self.error is not None:
            output_path.write_text("partial output\n", encoding="utf-8")
            raise BackendError(self.error)
        output = self.outputs.pop(0) if self.outputs else ""
        output_path.write_text(output, encoding="utf-8")

    def parse_text(self, output_path: Path) -> str:
        return output_path.read_text(encoding="utf-8")

    def get_models(self) -> list[str]:
        return ["fake-model"]


class FakeProbe:
    """Process probe that treats only the given pids as alive."""

    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = set(alive or ())
        self.checked: list[int] = []

    def is_alive(self, pid: int) -> bool:
        self.checked.append(pid)
        return pid in self.alive


class FakeProcesses:
    """Records stop requests instead of signalling real processes."""

    def __init__(self) -> None:
        self.terminated: list[int] = []
        self.tmux_killed: list[str] = []

    def terminate_pid(self, pid: int) -> bool:
        self.terminated.append(pid)
        return True

    def kill_tmux_session(self, name: str) -> bool:
        self.tmux_killed.append(name)
        return True


@pytest.fixture(autouse=True)
def isolated_env(tmp_path_factory, monkeypatch):
    """Keep every test away from the real ~/.config/gralph and GRALPH_* variables."""

    for key in list(os.environ):
        if key.startswith("GRALPH_"):
            monkeypatch.delenv(key, raising=False)
    root = tmp_path_factory.mktemp("gralph-home")
    monkeypatch.setenv("GRALPH_CONFIG_DIR", str(root / "config"))
    monkeypatch.setenv("GRALPH_STATE_DIR", str(root / "state"))
    monkeypatch.setenv("GRALPH_GLOBAL_CONFIG", str(root / "config" / "config.yaml"))
    return root


@pytest.fixture()
def project(tmp_path) -> Path:
    """Project directory with a three-item task file."""

    directory = tmp_path / "demo-project"
    directory.mkdir()
    (directory / "PRD.md").write_text(
        "# Demo\n\n- [ ] first task\n- [ ] second task\n- [x] already done\n",
        encoding="utf-8",
    )
    return directory


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the codex backend at the bundled echo agent."""

    monkeypatch.setenv("GRALPH_BACKENDS_CODEX_COMMAND", ECHO_AGENT_COMMAND)
    python_path = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{_SRC_DIR}{os.pathsep}{python_path}" if python_path else str(_SRC_DIR),
    )


@pytest.fixture()
def fake_backend() -> type[FakeBackend]:
    return FakeBackend


@pytest.fixture()
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture()
def fake_processes() -> FakeProcesses:
    return FakeProcesses()
