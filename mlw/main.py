"""
mlw command line

Watches directories for file changes and restarts a script when they happen.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from mlw.services.control_loop import ControlLoop
from mlw.utils.config import ConfigError, generate_default_config, load_config
from mlw.utils.utils import get_environment_config, print_startup_info, setup_logging

APP_TITLE = "mlw"
APP_VERSION = "0.2.0"

EXIT_CONFIG_ERROR = 2

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments, using environment variables for defaults."""
    env_config = get_environment_config()

    parser = argparse.ArgumentParser(
        prog=APP_TITLE,
        description="A file watcher for multi languages: restarts a script when watched files change",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mlw --gen-config          # Write a default mlw.toml
  mlw                       # Watch and run using ./mlw.toml
  mlw -c dev.toml -v        # Use another config with debug logging
        """,
    )
    parser.add_argument(
        "-c",
        "--config",
        default=env_config["config_path"],
        help="Path to config file (default: %(default)s)",
    )
    parser.add_argument(
        "-g",
        "--gen-config",
        action="store_true",
        help="Generate a default config file and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=env_config["verbose"],
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-level",
        default=env_config["log_level"],
        help="Log level (DEBUG, INFO, WARNING, ERROR); overrides the config file",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser.parse_args(argv)


def resolve_log_level(args: argparse.Namespace, configured: str | None = None) -> str:
    """Pick the effective log level: --verbose, then --log-level/LOG_LEVEL, then the config."""
    if args.verbose:
        return "DEBUG"
    if args.log_level:
        return str(args.log_level).upper()
    return configured or "INFO"


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    load_dotenv()
    args = parse_args(argv)
    config_path = Path(args.config)

    if args.gen_config:
        setup_logging(resolve_log_level(args))
        try:
            generate_default_config(config_path)
        except ConfigError as e:
            logger.error(str(e))
            return EXIT_CONFIG_ERROR
        print(f"Default configuration file generated at {config_path}")
        return 0

    try:
        config = load_config(config_path)
    except ConfigError as e:
        setup_logging(resolve_log_level(args))
        logger.error(f"Invalid configuration: {e}")
        logger.info(f"💡 Run '{APP_TITLE} --gen-config' to create a default configuration")
        return EXIT_CONFIG_ERROR

    setup_logging(resolve_log_level(args, config.log_level))
    logger.info(f"Starting {APP_TITLE} v{APP_VERSION}")
    print_startup_info(config, logger)

    control_loop = ControlLoop(config, handle_signals=True)
    try:
        return asyncio.run(control_loop.run())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
