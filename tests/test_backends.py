from __future__ import annotations

import io
import json
import sys

import allure
import pytest

from gralph.backend import (
    SUPPORTED_BACKENDS,
    BackendAdapter,
    BackendError,
    ClaudeBackend,
    CodexBackend,
    OpenCodeBackend,
    backend_from_name,
)
from gralph.backend.cli_backend import stream_command_output
from gralph.config import Settings
from gralph.core import LoopEngine, LoopRequest, LoopStatus

pytestmark = [
    allure.epic("Backends"),
    allure.feature("Agent Adapters"),
]


def _python_command(code: str) -> tuple[str, ...]:
    return (sys.executable, "-c", code)


def test_registry_knows_every_backend() -> None:
    assert set(SUPPORTED_BACKENDS) == {"claude", "opencode", "gemini", "codex"}
    for name in SUPPORTED_BACKENDS:
        assert isinstance(backend_from_name(name), BackendAdapter)

    with pytest.raises(BackendError, match="Unknown backend: nope"):
        backend_from_name("nope")


def test_command_override_and_installed_check() -> None:
    backend = backend_from_name("codex", command=(sys.executable, "-V"))

    assert backend.check_installed()
    assert not backend_from_name("codex", command=("definitely-not-a-real-agent",)).check_installed()


def test_build_args() -> None:
    assert CodexBackend().build_args("do it", "m1", None) == [
        "--quiet",
        "--auto-approve",
        "--model",
        "m1",
        "do it",
    ]
    assert OpenCodeBackend().build_args("do it", None, "high") == ["run", "--variant", "high", "do it"]
    claude_args = ClaudeBackend().build_args("do it", None, None)
    assert claude_args[-2:] == ["-p", "do it"]
    assert "stream-json" in claude_args


def test_claude_keeps_json_lines_and_parses_last_result(tmp_path) -> None:
    events = [
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}},
        {"type": "result", "result": "first"},
        {"type": "result", "result": "final\n<promise>COMPLETE</promise>"},
    ]
    script = "\n".join(
        ["print('not json')", *(f"print({json.dumps(json.dumps(event))})" for event in events)],
    )
    console = io.StringIO()
    backend = ClaudeBackend(_python_command(script), stream=console)
    output = tmp_path / "out.json"

    backend.run_iteration("prompt", None, None, output, tmp_path)

    kept = output.read_text(encoding="utf-8").splitlines()
    assert len(kept) == 4
    assert all(line.startswith("{") for line in kept)
    assert "working" in console.getvalue()
    assert backend.parse_text(output) == "final\n<promise>COMPLETE</promise>"


def test_claude_parse_falls_back_to_raw_contents(tmp_path) -> None:
    output = tmp_path / "out.json"
    output.write_text("plain text\n", encoding="utf-8")

    assert ClaudeBackend().parse_text(output) == "plain text\n"


def test_empty_prompt_is_rejected(tmp_path) -> None:
    with pytest.raises(BackendError, match="prompt is required"):
        CodexBackend().run_iteration("  ", None, None, tmp_path / "out", tmp_path)


def test_stream_command_output_reports_exit_status(tmp_path) -> None:
    lines: list[str] = []

    with pytest.raises(BackendError, match="agent exited with status 3"):
        stream_command_output(
            [sys.executable, "-c", "import sys; print('hi'); sys.exit(3)"],
            cwd=tmp_path,
            label="agent",
            on_line=lines.append,
        )

    assert lines == ["hi\n"]


def test_stream_command_output_spawn_failure(tmp_path) -> None:
    with pytest.raises(BackendError, match="failed to spawn agent"):
        stream_command_output(
            [str(tmp_path / "missing-binary")],
            cwd=tmp_path,
            label="agent",
            on_line=lambda _line: None,
        )


def test_echo_agent_drives_loop_to_completion(project, echo_agent) -> None:
    command = Settings.from_env().defaults.backend_commands["codex"]
    assert command == (sys.executable, "-m", "gralph.backend.echo_agent")
    backend = backend_from_name("codex", command=command, stream=io.StringIO())

    outcome = LoopEngine(backend, sleep=lambda _seconds: None, echo=False).run_loop(
        LoopRequest(project_dir=project, max_iterations=5, session_name="echo"),
    )

    assert outcome.status is LoopStatus.COMPLETE
    assert outcome.iterations == 3
    assert "- [ ]" not in (project / "PRD.md").read_text(encoding="utf-8")
