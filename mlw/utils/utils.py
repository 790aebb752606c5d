"""Utility functions for mlw."""

import logging
import os
import shlex
from typing import Any

from mlw.utils.config import DEFAULT_CONFIG_NAME, RunConfig


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_boolean_env(env_var: str, default: str = "false") -> bool:
    """
    Parse a boolean environment variable with consistent behavior.

    Args:
        env_var: Environment variable name
        default: Default value if env var is not set

    Returns:
        Boolean value
    """
    value = os.getenv(env_var, default).lower()
    return value in ("true", "1", "yes", "on")


def get_environment_config() -> dict[str, Any]:
    """
    Get the environment overrides understood by mlw.

    Returns:
        Dictionary of configuration values, ``None`` where unset
    """
    log_level = os.getenv("LOG_LEVEL")
    return {
        "config_path": os.getenv("MLW_CONFIG", DEFAULT_CONFIG_NAME),
        "log_level": log_level.upper() if log_level else None,
        "verbose": parse_boolean_env("MLW_VERBOSE"),
    }


def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the command line.

    Args:
        level: Level name, unknown names fall back to INFO
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def print_startup_info(config: RunConfig, logger: logging.Logger) -> None:
    """
    Log the resolved configuration at startup.

    Args:
        config: Resolved run configuration
        logger: Logger instance
    """
    if config.config_path:
        logger.info(f"Configuration loaded from {config.config_path}")
    logger.info(f"Command: {shlex.join(config.command)}")
    for target in config.targets:
        if target.names:
            for name in sorted(target.names):
                logger.info(f"Watching file: {target.directory / name}")
            continue
        extensions = ", ".join(sorted(target.extensions)) or "all files"
        logger.info(f"Watching path: {target.directory} ({extensions})")
    logger.info(
        f"Poll interval {config.poll_interval}s, debounce {config.debounce}s, "
        f"graceful timeout {config.graceful_timeout}s, watcher={config.watcher.value}, "
        f"crash policy={config.crash_policy.value}"
    )
    if config.ignore_pattern:
        logger.debug(f"Ignoring paths matching {config.ignore_pattern!r}")
