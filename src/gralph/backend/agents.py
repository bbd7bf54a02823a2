"""Adapters for the supported coding-agent CLIs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, TextIO

from gralph.backend.base import BackendAdapter, BackendError
from gralph.backend.cli_backend import CliAgentBackend, optional_flag


class ClaudeBackend(CliAgentBackend):
    """Claude Code in headless stream-json mode.

    Only JSON event lines are kept in the output file; assistant text blocks
    are mirrored to the console as they stream in. The parsed answer is the
    text of the last ``result`` event.
    """

    name = "claude"
    default_command = ("claude",)
    models = ("claude-opus-4-5",)
    extra_env = {"IS_SANDBOX": "1"}

    def build_args(self, prompt: str, model: str | None, variant: str | None) -> list[str]:
        return [
            "--dangerously-skip-permissions",
            "--verbose",
            "--print",
            "--output-format",
            "stream-json",
            "-p",
            prompt,
            *optional_flag("--model", model),
        ]

    def handle_line(self, line: str, output: TextIO) -> None:
        json_line = line.rstrip("\r\n").lstrip()
        if not json_line.startswith("{"):
            return
        output.write(f"{json_line}\n")
        output.flush()
        try:
            event = json.loads(json_line)
        except json.JSONDecodeError:
            return
        for text in extract_assistant_texts(event):
            self.echo(f"{text}\n")

    def parse_text(self, output_path: Path) -> str:
        contents = super().parse_text(output_path)
        result: str | None = None
        for line in contents.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                event = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            text = extract_result_text(event)
            if text is not None:
                result = text
        return result if result is not None else contents


class CodexBackend(CliAgentBackend):
    name = "codex"
    default_command = ("codex",)
    models = ("example-codex-model",)

    def build_args(self, prompt: str, model: str | None, variant: str | None) -> list[str]:
        return ["--quiet", "--auto-approve", *optional_flag("--model", model), prompt]


class GeminiBackend(CliAgentBackend):
    name = "gemini"
    default_command = ("gemini",)
    models = ("gemini-1.5-pro",)

    def build_args(self, prompt: str, model: str | None, variant: str | None) -> list[str]:
        return ["--headless", *optional_flag("--model", model), prompt]


class OpenCodeBackend(CliAgentBackend):
    name = "opencode"
    default_command = ("opencode",)
    models = (
        "opencode/example-code-model",
        "anthropic/claude-opus-4-5",
        "google/gemini-1.5-pro",
    )
    extra_env = {"OPENCODE_EXPERIMENTAL_LSP_TOOL": "true"}

    def build_args(self, prompt: str, model: str | None, variant: str | None) -> list[str]:
        return [
            "run",
            *optional_flag("--model", model),
            *optional_flag("--variant", variant),
            prompt,
        ]


_BACKENDS: dict[str, type[CliAgentBackend]] = {
    backend.name: backend
    for backend in (ClaudeBackend, OpenCodeBackend, GeminiBackend, CodexBackend)
}
SUPPORTED_BACKENDS = tuple(_BACKENDS)
DEFAULT_BACKEND = "claude"


def backend_from_name(
    name: str,
    *,
    command: tuple[str, ...] | None = None,
    stream: TextIO | None = None,
) -> BackendAdapter:
    try:
        backend_cls = _BACKENDS[name]
    except KeyError as error:
        raise BackendError(f"Unknown backend: {name}") from error
    return backend_cls(command, stream=stream)


def extract_assistant_texts(event: Any) -> list[str]:
    if not isinstance(event, dict) or event.get("type") != "assistant":
        return []
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    texts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text = item.get("text")
        if isinstance(text, str):
            texts.append(text)
    return texts


def extract_result_text(event: Any) -> str | None:
    if not isinstance(event, dict) or event.get("type") != "result":
        return None
    result = event.get("result")
    return result if isinstance(result, str) else None
