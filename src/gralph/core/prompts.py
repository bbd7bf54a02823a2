"""Prompt template resolution and rendering."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from gralph.core.errors import CoreIoError

PROJECT_TEMPLATE_PATH = Path(".gralph") / "prompt-template.txt"
NO_TASK_BLOCK = "No task block available."

DEFAULT_PROMPT_TEMPLATE = (
    "Read {task_file} carefully. Find any task marked '- [ ]' (unchecked).\n"
    "\n"
    "If unchecked tasks exist:\n"
    "- Complete ONE task fully\n"
    "- Mark it '- [x]' in {task_file}\n"
    "- Commit changes with a concise, lower-case conventional commit message "
    "(e.g. 'feat: add worktree collision checks')\n"
    "- Exit normally (do NOT output completion promise)\n"
    "\n"
    "If ZERO '- [ ]' remain (all complete):\n"
    "- Verify by searching the file\n"
    "- Output ONLY: <promise>{completion_marker}</promise>\n"
    "\n"
    "CRITICAL: Never mention the promise unless outputting it as the completion signal.\n"
    "\n"
    "{context_files_section}Task Block:\n"
    "{task_block}\n"
    "\n"
    "Iteration: {iteration}/{max_iterations}"
)


def resolve_prompt_template(
    project_dir: Path,
    *,
    override: str | None = None,
    template_file: Path | None = None,
) -> str:
    """Pick the template text: explicit override, configured file, project file, default."""

    if override is not None and override.strip():
        return override
    if template_file is not None and template_file.is_file():
        return _read_template(template_file)
    project_template = project_dir / PROJECT_TEMPLATE_PATH
    if project_template.is_file():
        return _read_template(project_template)
    return DEFAULT_PROMPT_TEMPLATE


def _read_template(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise CoreIoError(path, error) from error


def normalize_context_files(raw: str | Iterable[str] | None) -> str:
    """Accept a comma-separated string or a list and return one path per line."""

    if raw is None:
        return ""
    entries = raw.split(",") if isinstance(raw, str) else list(raw)
    return "\n".join(entry.strip() for entry in entries if entry and entry.strip())


def render_prompt_template(  # noqa: PLR0913
    template: str,
    *,
    task_file: str,
    completion_marker: str,
    iteration: int,
    max_iterations: int,
    task_block: str | None,
    context_files: str = "",
) -> str:
    context_section = ""
    if context_files.strip():
        context_section = f"Context Files (read these first):\n{context_files}\n"

    # Plain replacement: templates routinely contain literal braces.
    replacements = (
        ("{task_file}", task_file),
        ("{completion_marker}", completion_marker),
        ("{iteration}", str(iteration)),
        ("{max_iterations}", str(max_iterations)),
        ("{task_block}", task_block if task_block is not None else NO_TASK_BLOCK),
        ("{context_files}", context_files),
        ("{context_files_section}", context_section),
    )
    rendered = template
    for placeholder, value in replacements:
        rendered = rendered.replace(placeholder, value)
    return rendered
