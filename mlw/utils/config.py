"""Run configuration: loading, validation and the default configuration file."""

import logging
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from mlw.watchers.file_watcher import WatchTarget


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "mlw.toml"

DEFAULT_CONFIG = r"""# Default mlw configuration file
# Path(s) to watch
path = ["./src"]

# Type of script to run (python, python2, node, lua, php, go, rust, sh)
script_type = "python"

# Script to run, defaults to the first watched path
script = "./src/main.py"

# Additional arguments for the script (optional)
# script_args = ["--dev", "--watch"]

# Explicit command, overrides script_type/script (optional)
# command = ["uvicorn", "app:app", "--port", "8000"]

# File extensions to watch, defaults depend on script_type
# extensions = [".py"]

# Seconds between directory scans
poll_interval = 1.0

# Seconds of quiet required before restarting after a change
debounce = 0.3

# Seconds to wait for the script to exit before killing it
graceful_timeout = 5.0

# Verbose logging
verbose = true

# Pattern for files to ignore (optional)
ignore_pattern = ".*\\.git.*"

# Whether deleting a watched file triggers a restart
delete_is_change = true

# What to do when the script exits on its own: wait, restart or exit
crash_policy = "wait"

# How often to retry a failed launch before giving up
spawn_retries = 0
spawn_retry_delay = 1.0

# Change detection backend: poll or events
watcher = "poll"

# Extra environment variables for the script (optional)
# [env]
# APP_ENV = "development"
"""

# script_type -> (interpreter, default arguments, default extensions)
SCRIPT_TYPES: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    # Interpreted languages
    "python": ("python3", (), (".py",)),
    "python2": ("python2", (), (".py",)),
    "node": ("node", (), (".js", ".mjs", ".cjs", ".json")),
    "lua": ("lua", (), (".lua",)),
    "php": ("php", (), (".php",)),
    # Compiled languages
    "go": ("go", ("run",), (".go", ".mod")),
    "rust": ("cargo", ("run", "--"), (".rs", ".toml")),
    # Shell
    "sh": ("sh", (), (".sh",)),
}


class ConfigError(Exception):
    """Configuration is missing or invalid."""


class CrashPolicy(Enum):
    """What the control loop does when the managed process exits on its own."""

    WAIT = "wait"
    RESTART = "restart"
    EXIT = "exit"


class WatcherKind(Enum):
    """Change detection backend."""

    POLL = "poll"
    EVENTS = "events"


@dataclass(frozen=True)
class RunConfig:
    """Resolved, immutable configuration for one run."""

    targets: tuple[WatchTarget, ...]
    command: tuple[str, ...]
    poll_interval: float = 1.0
    debounce: float = 0.3
    graceful_timeout: float = 5.0
    log_level: str = "INFO"
    ignore_pattern: str | None = None
    delete_is_change: bool = True
    crash_policy: CrashPolicy = CrashPolicy.WAIT
    spawn_retries: int = 0
    spawn_retry_delay: float = 1.0
    watcher: WatcherKind = WatcherKind.POLL
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    config_path: Path | None = None

    def __post_init__(self) -> None:
        """Validate values that would break the control loop."""
        if not self.targets:
            raise ConfigError("At least one watch path must be configured")
        if not self.command:
            raise ConfigError("Command must not be empty")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.debounce < 0:
            raise ConfigError("debounce must be non-negative")
        if self.graceful_timeout < 0:
            raise ConfigError("graceful_timeout must be non-negative")
        if self.spawn_retries < 0:
            raise ConfigError("spawn_retries must be non-negative")
        if self.spawn_retry_delay < 0:
            raise ConfigError("spawn_retry_delay must be non-negative")
        if self.ignore_pattern is not None and not isinstance(self.ignore_pattern, str):
            raise ConfigError(f"ignore_pattern must be a string, got {self.ignore_pattern!r}")
        if self.ignore_pattern:
            try:
                re.compile(self.ignore_pattern)
            except re.error as e:
                raise ConfigError(f"Invalid ignore_pattern {self.ignore_pattern!r}: {e}") from e


def resolve_command(
    script_type: str | None, script: str | None, script_args: list[str] | None = None
) -> tuple[str, ...]:
    """
    Build the argument vector for a script type.

    Args:
        script_type: Key of SCRIPT_TYPES
        script: Script path passed to the interpreter
        script_args: Extra arguments appended after the script

    Returns:
        Command tuple

    Raises:
        ConfigError: If the script type is missing or unsupported
    """
    if not script_type:
        raise ConfigError("Missing script_type (or command) in config")
    if script_type not in SCRIPT_TYPES:
        raise ConfigError(f"Unsupported script type: {script_type}")

    interpreter, default_args, _ = SCRIPT_TYPES[script_type]
    command = [interpreter, *default_args]
    if script:
        command.append(script)
    command.extend(script_args or [])
    return tuple(command)


def default_extensions(script_type: str | None) -> tuple[str, ...]:
    """Extensions watched by default for a script type, empty means all files."""
    if script_type and script_type in SCRIPT_TYPES:
        return SCRIPT_TYPES[script_type][2]
    return ()


def _read_config_file(file_path: Path) -> dict[str, Any]:
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {file_path}: {e}") from e

    try:
        if file_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = tomllib.loads(text)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {file_path}: expected a table, got {type(data).__name__}")
    return data


def _as_str_list(data: dict[str, Any], key: str, file_path: Path) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{file_path}: '{key}' must be a list of strings")
    return value


def _as_number(data: dict[str, Any], key: str, default: float, file_path: Path) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{file_path}: '{key}' must be a number")
    return float(value)


def _as_bool(data: dict[str, Any], key: str, default: bool, file_path: Path) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{file_path}: '{key}' must be true or false, got {value!r}")
    return value


def _as_optional_str(data: dict[str, Any], key: str, file_path: Path) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{file_path}: '{key}' must be a string")
    return value


def _watch_target(path: Path, extensions: list[str]) -> WatchTarget:
    """Watch a directory filtered by extension, or a single file by name."""
    if path.is_dir():
        return WatchTarget(path, extensions)
    if path.is_file():
        return WatchTarget.for_file(path)
    raise ConfigError(f"Watch path {path} is neither a directory nor a regular file")


def _as_enum(enum_cls: Any, data: dict[str, Any], key: str, default: Enum, file_path: Path) -> Any:
    value = data.get(key, default.value)
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigError(f"{file_path}: '{key}' must be one of {choices}, got {value!r}") from None


def load_config(file_path: Path) -> RunConfig:
    """
    Load and validate a configuration file.

    Relative paths in the file are resolved against the file's directory.

    Args:
        file_path: TOML file, or YAML when the suffix is .yaml/.yml

    Returns:
        Resolved RunConfig

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    file_path = Path(file_path).absolute()
    data = _read_config_file(file_path)
    base_dir = file_path.parent

    paths = _as_str_list(data, "path", file_path)
    if not paths:
        raise ConfigError(f"{file_path}: 'path' must list at least one directory or file")

    watch_paths = [(base_dir / p).resolve() for p in paths]
    missing = [str(p) for p in watch_paths if not p.exists()]
    if missing:
        raise ConfigError(f"One or more specified paths do not exist: {', '.join(missing)}")

    script_type = data.get("script_type")
    extensions = _as_str_list(data, "extensions", file_path)
    if extensions is None:
        extensions = list(default_extensions(script_type))

    try:
        targets = tuple(_watch_target(path, extensions) for path in watch_paths)
    except ValueError as e:
        raise ConfigError(f"{file_path}: invalid extensions: {e}") from e

    command = _as_str_list(data, "command", file_path)
    if command:
        resolved_command = tuple(command)
    else:
        script = data.get("script", paths[0])
        resolved_command = resolve_command(script_type, script, _as_str_list(data, "script_args", file_path))

    verbose = _as_bool(data, "verbose", False, file_path)
    log_level = str(data.get("log_level", "DEBUG" if verbose else "INFO")).upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ConfigError(f"{file_path}: unknown log_level {log_level!r}")

    env = data.get("env", {})
    if not isinstance(env, dict):
        raise ConfigError(f"{file_path}: 'env' must be a table")

    spawn_retries = data.get("spawn_retries", 0)
    if isinstance(spawn_retries, bool) or not isinstance(spawn_retries, int):
        raise ConfigError(f"{file_path}: 'spawn_retries' must be an integer")

    debounce_default = data.get("delay", 0.3)
    config = RunConfig(
        targets=targets,
        command=resolved_command,
        poll_interval=_as_number(data, "poll_interval", 1.0, file_path),
        debounce=_as_number(data, "debounce", debounce_default, file_path),
        graceful_timeout=_as_number(data, "graceful_timeout", 5.0, file_path),
        log_level=log_level,
        ignore_pattern=_as_optional_str(data, "ignore_pattern", file_path),
        delete_is_change=_as_bool(data, "delete_is_change", True, file_path),
        crash_policy=_as_enum(CrashPolicy, data, "crash_policy", CrashPolicy.WAIT, file_path),
        spawn_retries=spawn_retries,
        spawn_retry_delay=_as_number(data, "spawn_retry_delay", 1.0, file_path),
        watcher=_as_enum(WatcherKind, data, "watcher", WatcherKind.POLL, file_path),
        cwd=(base_dir / data["cwd"]).resolve() if data.get("cwd") else base_dir,
        env={str(k): str(v) for k, v in env.items()},
        config_path=file_path,
    )

    logger.debug(f"Configuration loaded from {file_path}")
    return config


def generate_default_config(output_path: Path) -> Path:
    """
    Write the default configuration file.

    Raises:
        ConfigError: If a file already exists at ``output_path``
    """
    output_path = Path(output_path)
    if output_path.exists():
        raise ConfigError(f"Config file already exists at {output_path}")

    try:
        output_path.write_text(DEFAULT_CONFIG, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to write config file {output_path}: {e}") from e
    return output_path
