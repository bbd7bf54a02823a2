"""Runtime configuration: layered YAML files plus ``GRALPH_*`` environment overrides.

Layers, lowest precedence first:

1. optional defaults file (``GRALPH_DEFAULT_CONFIG``)
2. global file (``GRALPH_GLOBAL_CONFIG`` or ``<config dir>/config.yaml``)
3. project file (``<project>/.gralph.yaml``, name via ``GRALPH_PROJECT_CONFIG_NAME``)
4. environment: ``GRALPH_<SECTION>_<KEY>`` for any dotted key, plus the
   dedicated variables listed on each settings field.
"""

from __future__ import annotations

import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PROJECT_CONFIG_NAME = ".gralph.yaml"
LOCAL_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})

_BACKEND_COMMAND_ENV = re.compile(r"GRALPH_BACKENDS_([A-Z0-9]+)_COMMAND")

_LEGACY_ENV_ALIASES = {
    "defaults.max_iterations": "GRALPH_MAX_ITERATIONS",
    "defaults.task_file": "GRALPH_TASK_FILE",
    "defaults.completion_marker": "GRALPH_COMPLETION_MARKER",
    "defaults.backend": "GRALPH_BACKEND",
    "defaults.model": "GRALPH_MODEL",
}


class ConfigError(ValueError):
    """Configuration file or value is invalid."""


@dataclass(slots=True)
class LoopDefaults:
    """Loop parameters used when the command line leaves them unset."""

    task_file: str = "PRD.md"
    max_iterations: int = 30
    completion_marker: str = "COMPLETE"
    backend: str = "claude"
    model: str | None = None
    variant: str | None = None
    opencode_default_model: str | None = None
    context_files: tuple[str, ...] = ()
    log_retain_days: int = 7
    prompt_template_file: Path | None = None
    backend_commands: dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(slots=True)
class StoreSettings:
    """Where session state lives and how long to wait for its lock."""

    state_dir: Path = field(default_factory=lambda: default_config_dir())
    state_file: Path | None = None
    lock_file: Path | None = None
    lock_timeout_seconds: float = 10.0
    lock_poll_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.state_file is None:
            self.state_file = self.state_dir / "state.json"
        if self.lock_file is None:
            self.lock_file = self.state_dir / "state.lock"


@dataclass(slots=True)
class NotificationSettings:
    webhook: str | None = None
    on_complete: bool = True
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class VerifierSettings:
    """Commands run in the project directory after a loop completes."""

    auto_run: bool = False
    commands: tuple[str, ...] = ()


@dataclass(slots=True)
class ServerSettings:
    """Status server binding and access control."""

    host: str = "127.0.0.1"
    port: int = 8080
    token: str | None = None
    open: bool = False
    max_body_bytes: int = 4096

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}.")
        if self.max_body_bytes <= 0:
            raise ConfigError("GRALPH_SERVER_MAX_BODY_BYTES must be > 0.")
        if self.host not in LOCAL_HOSTS and not self.token and not self.open:
            raise ConfigError(
                f"Refusing to bind {self.host} without a token. "
                "Set GRALPH_SERVER_TOKEN or pass --open to allow unauthenticated access.",
            )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    defaults: LoopDefaults = field(default_factory=LoopDefaults)
    store: StoreSettings = field(default_factory=StoreSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    verifier: VerifierSettings = field(default_factory=VerifierSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        project_dir: Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Load settings from config files and the environment."""

        env = os.environ if environ is None else environ
        merged = load_config_layers(project_dir, environ=env)
        source = _Source(merged, env)

        state_dir = Path(env.get("GRALPH_STATE_DIR") or default_config_dir(env)).expanduser()
        state_file = env.get("GRALPH_STATE_FILE")
        lock_file = env.get("GRALPH_LOCK_FILE")
        template_file = env.get("GRALPH_PROMPT_TEMPLATE_FILE") or source.get(
            "defaults.prompt_template_file",
        )

        return cls(
            defaults=LoopDefaults(
                task_file=source.text("defaults.task_file", "PRD.md"),
                max_iterations=source.integer("defaults.max_iterations", 30),
                completion_marker=source.text("defaults.completion_marker", "COMPLETE"),
                backend=source.text("defaults.backend", "claude"),
                model=source.optional_text("defaults.model"),
                variant=source.optional_text("defaults.variant"),
                opencode_default_model=source.optional_text("opencode.default_model"),
                context_files=source.string_list("defaults.context_files"),
                log_retain_days=source.integer("logging.retain_days", 7),
                prompt_template_file=Path(template_file).expanduser() if template_file else None,
                backend_commands=_backend_commands(merged, env),
            ),
            store=StoreSettings(
                state_dir=state_dir,
                state_file=Path(state_file).expanduser() if state_file else None,
                lock_file=Path(lock_file).expanduser() if lock_file else None,
                lock_timeout_seconds=_parse_float(
                    env.get("GRALPH_LOCK_TIMEOUT"),
                    "GRALPH_LOCK_TIMEOUT",
                    10.0,
                ),
                lock_poll_seconds=_parse_float(
                    env.get("GRALPH_LOCK_POLL_INTERVAL"),
                    "GRALPH_LOCK_POLL_INTERVAL",
                    0.1,
                ),
            ),
            notifications=NotificationSettings(
                webhook=source.optional_text("notifications.webhook"),
                on_complete=source.boolean("notifications.on_complete", default=True),
                timeout_seconds=float(source.integer("notifications.timeout_seconds", 30)),
            ),
            verifier=VerifierSettings(
                auto_run=source.boolean("verifier.auto_run", default=False),
                commands=source.string_list("verifier.commands"),
            ),
            server=ServerSettings(
                host=source.text("server.host", "127.0.0.1"),
                port=source.integer("server.port", 8080),
                token=source.optional_text("server.token"),
                open=source.boolean("server.open", default=False),
                max_body_bytes=source.integer("server.max_body_bytes", 4096),
            ),
            values=merged,
        )

    def validate(self) -> None:
        """Raise configuration error for values no command can work with."""

        if self.defaults.max_iterations <= 0:
            raise ConfigError("defaults.max_iterations must be a positive integer.")
        if not self.defaults.completion_marker.strip():
            raise ConfigError("defaults.completion_marker must not be empty.")
        if self.defaults.log_retain_days < 0:
            raise ConfigError("logging.retain_days must be >= 0.")
        if self.store.lock_timeout_seconds < 0:
            raise ConfigError("GRALPH_LOCK_TIMEOUT must be >= 0.")
        if self.store.lock_poll_seconds <= 0:
            raise ConfigError("GRALPH_LOCK_POLL_INTERVAL must be > 0.")

    def flatten(self) -> dict[str, str]:
        """Dotted view of the merged configuration files, for display."""

        flat: dict[str, str] = {}
        _flatten_into("", self.values, flat)
        return dict(sorted(flat.items()))


def default_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    configured = env.get("GRALPH_CONFIG_DIR")
    if configured:
        return Path(configured).expanduser()
    home = env.get("HOME") or "."
    return Path(home) / ".config" / "gralph"


def config_paths(
    project_dir: Path | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> list[Path]:
    """Existing config files in merge order."""

    env = os.environ if environ is None else environ
    candidates: list[Path] = []
    default_path = env.get("GRALPH_DEFAULT_CONFIG")
    if default_path:
        candidates.append(Path(default_path).expanduser())
    candidates.append(global_config_path(env))
    if project_dir is not None and project_dir.is_dir():
        candidates.append(project_dir / env.get("GRALPH_PROJECT_CONFIG_NAME", PROJECT_CONFIG_NAME))
    return [path for path in candidates if path.is_file()]


def load_config_layers(
    project_dir: Path | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for path in config_paths(project_dir, environ=environ):
        merged = merge_mappings(merged, read_yaml(path))
    return merged


def read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as error:
        raise ConfigError(f"Failed to read config file {path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Invalid YAML in {path}: {error}") from error
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def merge_mappings(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` into ``base``; nested mappings merge, everything else replaces."""

    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_mappings(current, value)
        else:
            merged[key] = value
    return merged


def env_key_for(key: str) -> str:
    return "GRALPH_" + key.replace(".", "_").replace("-", "_").upper()


def global_config_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    configured = env.get("GRALPH_GLOBAL_CONFIG")
    if configured:
        return Path(configured).expanduser()
    return default_config_dir(env) / "config.yaml"


def lookup_value(values: Mapping[str, Any], key: str) -> Any:
    """Value at a dotted ``key`` in a nested mapping; ConfigError when absent."""

    current: Any = values
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            raise ConfigError(f"Config key not found: {key}")
        current = current[part]
    return current


def write_config_value(path: Path, key: str, raw_value: str) -> None:
    """Set a dotted ``key`` in the YAML file at ``path``, creating it if needed."""

    parts = [part for part in key.split(".") if part]
    if not parts:
        raise ConfigError("Config key is required.")
    data = read_yaml(path) if path.is_file() else {}
    try:
        value = yaml.safe_load(raw_value) if raw_value.strip() else ""
    except yaml.YAMLError:
        value = raw_value

    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=True)
    except OSError as error:
        raise ConfigError(f"Failed to write config file {path}: {error}") from error


class _Source:
    """Resolves dotted keys against the environment first, then the merged files."""

    def __init__(self, merged: Mapping[str, Any], environ: Mapping[str, str]) -> None:
        self._merged = merged
        self._environ = environ

    def get(self, key: str) -> Any:
        legacy = _LEGACY_ENV_ALIASES.get(key)
        if legacy and legacy in self._environ:
            return self._environ[legacy]
        env_key = env_key_for(key)
        if env_key in self._environ:
            return self._environ[env_key]
        value: Any = self._merged
        for part in key.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return None
            value = value[part]
        return value

    def text(self, key: str, default: str) -> str:
        value = self.optional_text(key)
        return value if value is not None else default

    def optional_text(self, key: str) -> str | None:
        value = self.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def integer(self, key: str, default: int) -> int:
        value = self.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            return default
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be an integer, got {value!r}.")
        try:
            return int(value)
        except (TypeError, ValueError) as error:
            raise ConfigError(f"{key} must be an integer, got {value!r}.") from error

    def boolean(self, key: str, *, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        normalized = str(value).strip().lower()
        if not normalized:
            return default
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ConfigError(f"{key} must be a boolean, got {value!r}.")

    def string_list(self, key: str) -> tuple[str, ...]:
        value = self.get(key)
        if value is None:
            return ()
        items = value.split(",") if isinstance(value, str) else value
        if not isinstance(items, list | tuple):
            raise ConfigError(f"{key} must be a list or comma-separated string.")
        return tuple(str(item).strip() for item in items if str(item).strip())


def _backend_commands(
    merged: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, tuple[str, ...]]:
    """Per-backend command overrides from ``backends.<name>.command`` or the environment."""

    raw: dict[str, str] = {}
    section = merged.get("backends")
    if isinstance(section, Mapping):
        for name, options in section.items():
            if isinstance(options, Mapping) and options.get("command"):
                raw[str(name)] = str(options["command"])
    for key, value in environ.items():
        match = _BACKEND_COMMAND_ENV.fullmatch(key)
        if match and value.strip():
            raw[match.group(1).lower()] = value
    commands: dict[str, tuple[str, ...]] = {}
    for name, command in raw.items():
        try:
            argv = tuple(shlex.split(command))
        except ValueError as error:
            raise ConfigError(f"Invalid command for backend {name!r}: {error}") from error
        if argv:
            commands[name] = argv
    return commands


def _parse_float(raw: str | None, name: str, default: float) -> float:
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigError(f"{name} must be a number, got {raw!r}.") from error


def _flatten_into(prefix: str, value: Any, out: dict[str, str]) -> None:
    if isinstance(value, Mapping):
        for key, item in value.items():
            _flatten_into(f"{prefix}.{key}" if prefix else str(key), item, out)
        return
    if not prefix:
        return
    if isinstance(value, list):
        out[prefix] = ",".join("" if item is None else _render(item) for item in value)
    else:
        out[prefix] = "" if value is None else _render(value)


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
