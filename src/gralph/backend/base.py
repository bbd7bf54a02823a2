"""Backend interface for driving coding-agent CLIs."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable


class BackendError(RuntimeError):
    """Agent invocation or output parsing failed."""


@runtime_checkable
class BackendAdapter(Protocol):
    """Protocol implemented by coding-agent adapters."""

    name: str

    def check_installed(self) -> bool:
        """Return whether the agent command can be launched."""

    def run_iteration(  # noqa: PLR0913
        self,
        prompt: str,
        model: str | None,
        variant: str | None,
        output_path: Path,
        working_dir: Path,
    ) -> None:
        """Run one agent invocation, writing its raw output to ``output_path``."""

    def parse_text(self, output_path: Path) -> str:
        """Extract the agent's final textual answer from raw output."""

    def get_models(self) -> list[str]:
        """Return model identifiers known to work with this agent."""
