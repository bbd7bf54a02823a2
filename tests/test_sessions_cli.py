from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner

from gralph import main
from gralph.config import Settings
from gralph.sessions import (
    LogsCommand,
    SessionCliController,
    StartCommand,
    resolve_loop,
    run_loop_args,
    sanitize_session_name,
    session_name,
)
from gralph.state import StateStore

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Session CLI"),
]

PROMISE = "<promise>COMPLETE</promise>"


class RecordingSpawner:
    def __init__(self, pid: int = 4321) -> None:
        self.pid = pid
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str]) -> int:
        self.calls.append(args)
        return self.pid


@pytest.fixture()
def spawner() -> RecordingSpawner:
    return RecordingSpawner()


@pytest.fixture()
def webhook_requests() -> list[dict]:
    return []


@pytest.fixture()
def install_controller(monkeypatch, fake_probe, fake_processes, spawner, webhook_requests):
    """Swap the CLI's controller for one wired to fakes."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(json.loads(request.content))
        return httpx.Response(200)

    def _install(backend_factory=None) -> SessionCliController:
        kwargs = {}
        if backend_factory is not None:
            kwargs["backend_factory"] = backend_factory
        controller = SessionCliController(
            probe=fake_probe,
            processes=fake_processes,
            spawner=spawner,
            iteration_delay_seconds=0,
            webhook_transport=httpx.MockTransport(handler),
            **kwargs,
        )
        monkeypatch.setattr(main, "SESSION_CONTROLLER", controller)
        return controller

    return _install


def _store() -> StateStore:
    return StateStore.from_settings(Settings.from_env().store)


def _invoke(*args: str):
    return CliRunner().invoke(main.gralph, list(args))


def test_foreground_start_with_echo_agent(project, echo_agent, install_controller) -> None:
    install_controller()

    result = _invoke("start", str(project), "--backend", "codex", "--foreground")

    assert result.exit_code == 0, result.output
    assert "Loop summary: status=complete iterations=3 remaining=0" in result.output
    session = _store().get("demo-project")
    assert session["status"] == "complete"
    assert session["last_task_count"] == 0
    assert session["backend"] == "codex"
    assert (project / ".gralph" / "demo-project.log").is_file()


def test_background_start_spawns_run_loop(project, install_controller, spawner) -> None:
    install_controller()

    result = _invoke("start", str(project), "--name", "my demo", "--max-iterations", "4")

    assert result.exit_code == 0, result.output
    assert "Gralph loop started in background (PID: 4321)." in result.output
    args = spawner.calls[0]
    assert args[:4] == [sys.executable, "-m", "gralph", "run-loop"]
    assert args[args.index("--name") + 1] == "my-demo"
    assert args[args.index("--max-iterations") + 1] == "4"
    session = _store().get("my-demo")
    assert session["pid"] == 4321
    assert session["status"] == "running"
    assert session["iteration"] == 1
    assert session["max_iterations"] == 4
    assert session["last_task_count"] == 2
    assert session["dir"] == str(project.resolve())


def test_start_rejects_missing_directory(tmp_path, install_controller) -> None:
    install_controller()

    result = _invoke("start", str(tmp_path / "absent"))

    assert result.exit_code == 1
    assert "Directory does not exist" in result.output


def test_run_loop_reports_missing_backend(project, install_controller, monkeypatch) -> None:
    monkeypatch.setenv("GRALPH_BACKENDS_GEMINI_COMMAND", "gralph-no-such-agent")
    install_controller()

    result = _invoke("run-loop", str(project), "--backend", "gemini")

    assert result.exit_code == 1
    assert "Backend is not installed: gemini" in result.output


def test_loop_failure_marks_session_and_notifies(
    project, install_controller, fake_backend, webhook_requests
) -> None:
    backend = fake_backend(error="agent crashed")
    install_controller(lambda _name, command=None: backend)

    result = _invoke(
        "run-loop", str(project), "--name", "boom", "--webhook", "https://example.com/hook",
    )

    assert result.exit_code == 1
    assert "Loop failed: backend error: agent crashed" in result.output
    assert _store().get("boom")["status"] == "failed"
    assert webhook_requests[0]["event"] == "failed"
    assert webhook_requests[0]["reason"] == "error"


def test_undecodable_template_file_fails_loop_and_notifies(
    project, install_controller, fake_backend, webhook_requests, monkeypatch
) -> None:
    template = project / "template.txt"
    template.write_bytes(b"caf\xe9 {iteration}")
    monkeypatch.setenv("GRALPH_PROMPT_TEMPLATE_FILE", str(template))
    backend = fake_backend(["unused"])
    install_controller(lambda _name, command=None: backend)

    result = _invoke("run-loop", str(project), "--webhook", "https://example.com/hook")

    assert result.exit_code == 1
    assert "Loop failed:" in result.output
    assert backend.calls == 0
    assert _store().get("demo-project")["status"] == "failed"
    assert webhook_requests[0]["reason"] == "error"


def test_undecodable_template_option_is_reported(project, install_controller) -> None:
    install_controller()
    template = project / "template.txt"
    template.write_bytes(b"caf\xe9")

    result = _invoke("run-loop", str(project), "--prompt-template", str(template))

    assert result.exit_code == 1
    assert "Failed to read prompt template" in result.output


def test_max_iterations_notifies_failure(
    project, install_controller, fake_backend, webhook_requests
) -> None:
    backend = fake_backend(["nothing", "still nothing"])
    install_controller(lambda _name, command=None: backend)

    result = _invoke(
        "run-loop",
        str(project),
        "--max-iterations",
        "2",
        "--webhook",
        "https://example.com/hook",
    )

    assert result.exit_code == 0, result.output
    assert _store().get("demo-project")["status"] == "max_iterations"
    assert webhook_requests[0]["reason"] == "max_iterations"
    assert webhook_requests[0]["remaining_tasks"] == "2"


def test_completion_runs_verifier(project, install_controller, fake_backend, monkeypatch) -> None:
    (project / "PRD.md").write_text("- [x] done\n", encoding="utf-8")
    monkeypatch.setenv("GRALPH_VERIFIER_AUTO_RUN", "true")
    monkeypatch.setenv("GRALPH_VERIFIER_COMMANDS", f"{sys.executable} -c pass")
    backend = fake_backend([PROMISE])
    install_controller(lambda _name, command=None: backend)

    result = _invoke("run-loop", str(project))

    assert result.exit_code == 0, result.output
    assert "Verified:" in result.output
    assert _store().get("demo-project")["status"] == "verified"


def test_failed_verification(project, install_controller, fake_backend, monkeypatch) -> None:
    (project / "PRD.md").write_text("- [x] done\n", encoding="utf-8")
    monkeypatch.setenv("GRALPH_VERIFIER_AUTO_RUN", "true")
    monkeypatch.setenv("GRALPH_VERIFIER_COMMANDS", f"{sys.executable} -c 'raise SystemExit(2)'")
    backend = fake_backend([PROMISE])
    install_controller(lambda _name, command=None: backend)

    result = _invoke("run-loop", str(project))

    assert result.exit_code == 1
    assert "Verification failed" in result.output
    assert _store().get("demo-project")["status"] == "verify-failed"


def test_unparsable_verifier_command_fails_verification(
    project, install_controller, fake_backend, monkeypatch
) -> None:
    (project / "PRD.md").write_text("- [x] done\n", encoding="utf-8")
    monkeypatch.setenv("GRALPH_VERIFIER_AUTO_RUN", "true")
    monkeypatch.setenv("GRALPH_VERIFIER_COMMANDS", "pytest '-q")
    backend = fake_backend([PROMISE])
    install_controller(lambda _name, command=None: backend)

    result = _invoke("run-loop", str(project))

    assert result.exit_code == 1
    assert "Verification failed" in result.output
    assert _store().get("demo-project")["status"] == "verify-failed"


def test_status_table_marks_dead_sessions_stale(install_controller, fake_probe, project) -> None:
    install_controller()
    fake_probe.alive.add(10)
    store = _store()
    store.set(
        "alive",
        {"status": "running", "pid": 10, "dir": str(project), "iteration": 2, "max_iterations": 5},
    )
    store.set("dead", {"status": "running", "pid": 11, "last_task_count": 4})

    result = _invoke("status")

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].split() == ["NAME", "DIR", "ITERATION", "STATUS", "REMAINING"]
    assert set(lines[1].replace(" ", "")) == {"-"}
    assert lines[2].split() == ["alive", str(project), "2/5", "running", "2"]
    assert lines[3].split() == ["dead", "0/0", "stale", "4"]


def test_status_without_sessions(install_controller) -> None:
    install_controller()

    assert _invoke("status").output.strip() == "No sessions found."


def test_stop_named_and_all(install_controller, fake_processes) -> None:
    install_controller()
    store = _store()
    store.set("one", {"status": "running", "pid": 21, "tmux_session": "t-one"})
    store.set("two", {"status": "running", "pid": 22})
    store.set("done", {"status": "complete", "pid": 23})

    result = _invoke("stop", "one")
    assert result.output.strip() == "Stopped session: one"
    assert fake_processes.tmux_killed == ["t-one"]
    assert store.get("one") == {"name": "one", "status": "stopped", "pid": 0, "tmux_session": ""}

    result = _invoke("stop", "--all")
    assert result.output.strip() == "Stopped running sessions."
    assert fake_processes.terminated == [21, 22]
    assert store.get("done")["status"] == "complete"


@pytest.mark.parametrize(
    ("args", "message"),
    [((), "Session name is required."), (("ghost",), "Session not found: ghost")],
)
def test_stop_errors(install_controller, args, message) -> None:
    install_controller()

    result = _invoke("stop", *args)

    assert result.exit_code == 1
    assert message in result.output


def test_resume_restarts_resumable_sessions(install_controller, spawner, fake_probe, project) -> None:
    install_controller()
    fake_probe.alive.add(50)
    store = _store()
    store.set("stopped", {"status": "stopped", "dir": str(project), "backend": "codex"})
    store.set("live", {"status": "running", "pid": 50, "dir": str(project)})
    store.set("orphan", {"status": "running", "pid": 51, "dir": str(project)})
    store.set("finished", {"status": "complete", "dir": str(project)})

    result = _invoke("resume")

    assert result.output.strip() == "Resumed 2 session(s)."
    resumed = sorted(args[args.index("--name") + 1] for args in spawner.calls)
    assert resumed == ["orphan", "stopped"]
    assert store.get("stopped")["status"] == "running"
    assert store.get("stopped")["pid"] == 4321
    assert _invoke("resume", "finished").output.strip() == "No sessions to resume."


def test_logs_tail_and_missing_file(install_controller, tmp_path) -> None:
    install_controller()
    log_file = tmp_path / "demo.log"
    log_file.write_text("one\ntwo\nthree\n", encoding="utf-8")
    store = _store()
    store.set("demo", {"log_file": str(log_file)})
    store.set("nolog", {"dir": str(tmp_path)})

    assert _invoke("logs", "demo", "--lines", "2").output.splitlines() == ["two", "three"]
    missing = _invoke("logs", "nolog")
    assert missing.exit_code == 1
    assert "Log file does not exist" in missing.output


def test_follow_logs_streams_appended_text(install_controller, tmp_path) -> None:
    controller = install_controller()
    log_file = tmp_path / "demo.log"
    log_file.write_text("start\n", encoding="utf-8")
    _store().set("demo", {"log_file": str(log_file)})
    emitted: list[str] = []
    polls = iter([False, True])

    def fake_sleep(_seconds: float) -> None:
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write("appended\n")

    controller.follow_logs(
        LogsCommand(name="demo", follow=True),
        emitted.append,
        should_stop=lambda: next(polls),
        sleep=fake_sleep,
    )

    assert emitted == ["start", "appended"]


def test_backends_listing(install_controller) -> None:
    install_controller()

    lines = _invoke("backends").output.splitlines()

    assert [line.split(" ")[0] for line in lines] == ["claude", "opencode", "gemini", "codex"]


def test_config_set_get_list(install_controller) -> None:
    install_controller()

    assert _invoke("config", "set", "defaults.max_iterations", "12").exit_code == 0
    assert _invoke("config", "get", "defaults.max_iterations").output.strip() == "12"
    assert "defaults.max_iterations=12" in _invoke("config", "list").output.splitlines()
    missing = _invoke("config", "get", "nope.key")
    assert missing.exit_code == 1
    assert "Config key not found: nope.key" in missing.output


def test_session_naming() -> None:
    assert sanitize_session_name("my project/v2!") == "my-project-v2-"
    assert session_name("", Path("/tmp/x")) == "gralph"
    assert session_name(None, Path("/does/not/exist/proj.x")) == "proj-x"


def test_resolve_loop_precedence(project) -> None:
    settings = Settings.from_env(
        environ={
            "GRALPH_DEFAULTS_BACKEND": "opencode",
            "GRALPH_OPENCODE_DEFAULT_MODEL": "opencode/example-code-model",
            "GRALPH_DEFAULTS_MAX_ITERATIONS": "9",
        },
    )

    resolved = resolve_loop(StartCommand(dir=project, max_iterations=3), settings)

    assert resolved.backend == "opencode"
    assert resolved.model == "opencode/example-code-model"
    assert resolved.max_iterations == 3
    assert resolved.name == "demo-project"
    assert run_loop_args(project, "demo", StartCommand(dir=project, backend="codex"))[-2:] == [
        "--backend",
        "codex",
    ]
