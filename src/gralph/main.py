"""CLI entrypoint for gralph."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from gralph import __version__
from gralph.backend import SUPPORTED_BACKENDS
from gralph.config import (
    ConfigError,
    Settings,
    global_config_path,
    lookup_value,
    write_config_value,
)
from gralph.server import run_server
from gralph.sessions import (
    LogsCommand,
    ResumeCommand,
    SessionCliController,
    SessionCommandError,
    StartCommand,
    StopCommand,
)
from gralph.state import StateError, StateStore

click.rich_click.USE_MARKDOWN = True
SESSION_CONTROLLER = SessionCliController()


@click.group()
@click.version_option(version=__version__, prog_name="gralph")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def gralph(verbose: bool) -> None:
    """Autonomous coding-agent loops over a markdown task checklist."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def loop_options(func):  # noqa: ANN001, ANN201
    """Options shared by `start` and `run-loop`."""

    options = [
        click.argument(
            "dir",
            type=click.Path(path_type=Path, file_okay=False),
            default=Path("."),
            required=False,
        ),
        click.option("--name", "-n", default=None, help="Session name (default: directory name)."),
        click.option(
            "--max-iterations",
            type=click.IntRange(min=1),
            default=None,
            help="Max iterations before giving up.",
        ),
        click.option(
            "--task-file",
            "-f",
            default=None,
            help="Task file path, relative to the project.",
        ),
        click.option("--completion-marker", default=None, help="Completion promise text."),
        click.option(
            "--backend",
            "-b",
            type=click.Choice(SUPPORTED_BACKENDS),
            default=None,
            help="Coding agent backend.",
        ),
        click.option("--model", "-m", default=None, help="Model override (backend-specific)."),
        click.option("--variant", default=None, help="Model variant override (backend-specific)."),
        click.option(
            "--prompt-template",
            type=click.Path(path_type=Path, dir_okay=False),
            default=None,
            help="Path to a custom prompt template file.",
        ),
        click.option("--webhook", default=None, help="Notification webhook URL."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@gralph.command("start")
@loop_options
@click.option(
    "--foreground",
    "--no-tmux",
    is_flag=True,
    default=False,
    help="Run the loop in this terminal instead of in the background.",
)
def start(  # noqa: PLR0913
    dir: Path,  # noqa: A002
    name: str | None,
    max_iterations: int | None,
    task_file: str | None,
    completion_marker: str | None,
    backend: str | None,
    model: str | None,
    variant: str | None,
    prompt_template: Path | None,
    webhook: str | None,
    foreground: bool,
) -> None:
    """Start a new loop in `DIR` (default: current directory)."""

    with _command_errors():
        _emit_lines(
            SESSION_CONTROLLER.start(
                StartCommand(
                    dir=dir,
                    name=name,
                    max_iterations=max_iterations,
                    task_file=task_file,
                    completion_marker=completion_marker,
                    backend=backend,
                    model=model,
                    variant=variant,
                    prompt_template=prompt_template,
                    webhook=webhook,
                    foreground=foreground,
                ),
            ),
        )


@gralph.command("run-loop", hidden=True)
@loop_options
def run_loop(  # noqa: PLR0913
    dir: Path,  # noqa: A002
    name: str | None,
    max_iterations: int | None,
    task_file: str | None,
    completion_marker: str | None,
    backend: str | None,
    model: str | None,
    variant: str | None,
    prompt_template: Path | None,
    webhook: str | None,
) -> None:
    """Run a loop in the current process (used by background `start`)."""

    with _command_errors():
        _emit_lines(
            SESSION_CONTROLLER.run_loop(
                StartCommand(
                    dir=dir,
                    name=name,
                    max_iterations=max_iterations,
                    task_file=task_file,
                    completion_marker=completion_marker,
                    backend=backend,
                    model=model,
                    variant=variant,
                    prompt_template=prompt_template,
                    webhook=webhook,
                    foreground=True,
                ),
            ),
        )


@gralph.command("stop")
@click.argument("name", required=False)
@click.option("--all", "-a", "stop_all", is_flag=True, default=False, help="Stop all running sessions.")
def stop(name: str | None, stop_all: bool) -> None:
    """Stop a running loop."""

    with _command_errors():
        _emit_lines(SESSION_CONTROLLER.stop(StopCommand(name=name, all=stop_all)))


@gralph.command("status")
def status() -> None:
    """Show status of all sessions."""

    with _command_errors():
        _emit_lines(SESSION_CONTROLLER.status())


@gralph.command("resume")
@click.argument("name", required=False)
def resume(name: str | None) -> None:
    """Resume stale, stopped or failed sessions."""

    with _command_errors():
        _emit_lines(SESSION_CONTROLLER.resume(ResumeCommand(name=name)))


@gralph.command("logs")
@click.argument("name")
@click.option(
    "--lines",
    "-n",
    type=click.IntRange(min=0),
    default=200,
    show_default=True,
    help="How many trailing lines to print (0 prints everything).",
)
@click.option("--follow", is_flag=True, default=False, help="Follow log output.")
def logs(name: str, lines: int, follow: bool) -> None:
    """Show the log of a session."""

    command = LogsCommand(name=name, lines=lines, follow=follow)
    with _command_errors():
        if follow:
            try:
                SESSION_CONTROLLER.follow_logs(command, click.echo)
            except KeyboardInterrupt:
                return
        else:
            _emit_lines(SESSION_CONTROLLER.logs(command))


@gralph.command("backends")
def backends() -> None:
    """List available coding agent backends."""

    with _command_errors():
        _emit_lines(SESSION_CONTROLLER.backends())


@gralph.command("server")
@click.option("--host", "-H", default=None, help="Host/IP to bind to.")
@click.option("--port", "-p", type=click.IntRange(min=1, max=65535), default=None, help="Port number.")
@click.option("--token", "-t", default=None, help="Bearer token required by every request.")
@click.option(
    "--open",
    "open_access",
    is_flag=True,
    default=False,
    help="Allow unauthenticated access on non-local addresses (use with caution).",
)
def server(host: str | None, port: int | None, token: str | None, open_access: bool) -> None:
    """Start the HTTP status server."""

    with _command_errors():
        settings = Settings.from_env()
        settings.validate()
        if host is not None:
            settings.server.host = host
        if port is not None:
            settings.server.port = port
        if token is not None:
            settings.server.token = token
        if open_access:
            settings.server.open = True
        run_server(settings.server, StateStore.from_settings(settings.store))


@gralph.group("config")
def config() -> None:
    """Inspect or change configuration."""


@config.command("list")
@click.option(
    "--dir",
    "project_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory whose `.gralph.yaml` is merged in.",
)
def config_list(project_dir: Path | None) -> None:
    """List merged configuration values."""

    with _command_errors():
        settings = Settings.from_env(project_dir)
        _emit_lines([f"{key}={value}" for key, value in settings.flatten().items()])


@config.command("get")
@click.argument("key")
@click.option(
    "--dir",
    "project_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory whose `.gralph.yaml` is merged in.",
)
def config_get(key: str, project_dir: Path | None) -> None:
    """Print one configuration value by dotted key."""

    with _command_errors():
        settings = Settings.from_env(project_dir)
        flat = settings.flatten()
        if key in flat:
            click.echo(flat[key])
            return
        lookup_value(settings.values, key)
        raise ConfigError(f"Config key is not a scalar: {key}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Write a value into the global config file."""

    with _command_errors():
        path = global_config_path()
        write_config_value(path, key, value)
        click.echo(f"Set {key} in {path}")


@contextmanager
def _command_errors() -> Iterator[None]:
    try:
        yield
    except (SessionCommandError, ConfigError, StateError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gralph()
