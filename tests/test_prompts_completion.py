from __future__ import annotations

import allure
import pytest

from gralph.core.completion import check_completion, is_negated_promise, last_non_empty_line
from gralph.core.errors import CoreIoError, InvalidInputError
from gralph.core.prompts import (
    DEFAULT_PROMPT_TEMPLATE,
    NO_TASK_BLOCK,
    PROJECT_TEMPLATE_PATH,
    normalize_context_files,
    render_prompt_template,
    resolve_prompt_template,
)

pytestmark = [
    allure.epic("Loop Engine"),
    allure.feature("Prompts and Completion"),
]


@pytest.fixture()
def done_file(tmp_path):
    task_file = tmp_path / "PRD.md"
    task_file.write_text("- [x] all done\n", encoding="utf-8")
    return task_file


def test_render_default_template_fills_every_placeholder() -> None:
    prompt = render_prompt_template(
        DEFAULT_PROMPT_TEMPLATE,
        task_file="PRD.md",
        completion_marker="DONE",
        iteration=2,
        max_iterations=5,
        task_block="### Task X\n- [ ] do it",
        context_files="ARCH.md\nNOTES.md",
    )

    assert prompt.startswith("Read PRD.md carefully.")
    assert "<promise>DONE</promise>" in prompt
    assert "Context Files (read these first):\nARCH.md\nNOTES.md\nTask Block:" in prompt
    assert prompt.endswith("Iteration: 2/5")
    assert "{" not in prompt


def test_render_without_block_or_context() -> None:
    prompt = render_prompt_template(
        "{context_files_section}[{task_block}] {context_files}|{literal}",
        task_file="PRD.md",
        completion_marker="COMPLETE",
        iteration=1,
        max_iterations=1,
        task_block=None,
    )

    assert prompt == f"[{NO_TASK_BLOCK}] |{{literal}}"


def test_template_resolution_order(tmp_path) -> None:
    assert resolve_prompt_template(tmp_path) == DEFAULT_PROMPT_TEMPLATE

    project_template = tmp_path / PROJECT_TEMPLATE_PATH
    project_template.parent.mkdir()
    project_template.write_text("project {iteration}", encoding="utf-8")
    assert resolve_prompt_template(tmp_path) == "project {iteration}"

    configured = tmp_path / "configured.txt"
    configured.write_text("configured", encoding="utf-8")
    assert resolve_prompt_template(tmp_path, template_file=configured) == "configured"
    assert (
        resolve_prompt_template(tmp_path, override="inline", template_file=configured) == "inline"
    )


@pytest.mark.parametrize("configured", [True, False])
def test_undecodable_template_raises_io_error(tmp_path, configured) -> None:
    if configured:
        template = tmp_path / "configured.txt"
    else:
        template = tmp_path / PROJECT_TEMPLATE_PATH
        template.parent.mkdir()
    template.write_bytes(b"caf\xe9 {iteration}")

    with pytest.raises(CoreIoError) as excinfo:
        resolve_prompt_template(tmp_path, template_file=template if configured else None)

    assert excinfo.value.path == template
    assert isinstance(excinfo.value.error, UnicodeDecodeError)


def test_normalize_context_files() -> None:
    assert normalize_context_files(" a.md, ,b.md ") == "a.md\nb.md"
    assert normalize_context_files(["x.md", "  "]) == "x.md"
    assert normalize_context_files(None) == ""


def test_promise_on_last_line_completes(done_file) -> None:
    assert check_completion(done_file, "work done\n<promise>COMPLETE</promise>\n", "COMPLETE")


def test_trailing_blank_lines_and_indentation_are_ignored(done_file) -> None:
    result = "ok\n   <promise>COMPLETE</promise>  \n\n \t\n"

    assert last_non_empty_line(result) == "   <promise>COMPLETE</promise>  "
    assert check_completion(done_file, result, "COMPLETE")


@pytest.mark.parametrize(
    "result",
    [
        "I cannot output <promise>COMPLETE</promise>",
        "We WON'T say <promise>COMPLETE</promise>",
        "<promise>COMPLETE</promise>\nmore text after",
        "<promise>OTHER</promise>",
        "prefix <promise>COMPLETE</promise>",
        "   \n",
    ],
)
def test_non_completing_results(done_file, result) -> None:
    assert not check_completion(done_file, result, "COMPLETE")


def test_unchecked_tasks_block_completion(tmp_path) -> None:
    task_file = tmp_path / "PRD.md"
    task_file.write_text("- [ ] still open\n", encoding="utf-8")

    assert not check_completion(task_file, "<promise>COMPLETE</promise>", "COMPLETE")


def test_missing_task_file_is_invalid_input(tmp_path) -> None:
    with pytest.raises(InvalidInputError, match="task file does not exist"):
        check_completion(tmp_path / "nope.md", "<promise>COMPLETE</promise>", "COMPLETE")


def test_negation_only_counts_before_the_promise() -> None:
    assert is_negated_promise("do not <promise>X</promise>")
    assert not is_negated_promise("<promise>X</promise> cannot")
    assert not is_negated_promise("cannot say it")
