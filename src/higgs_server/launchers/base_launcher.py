"""Common launcher plumbing shared by higgsd entry points.

Handles .env loading, argument parsing, logging setup, config file
selection, settings resolution and the startup banner.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from higgs_server import __version__
from higgs_server.config import DEFAULTS, ServerSettings, load_settings
from higgs_server.management.configuration import create_configuration_manager
from higgs_server.management.environment import load_dotenv_if_available

DEFAULT_CONFIG_FILE = "config/higgs.yaml"

PLAIN_FORMAT = '%(asctime)s.%(msecs)03d [%(levelname)-5s] [%(name)-15s] %(message)s'


class BaseLauncher:
    """Static helpers plus the common startup sequence (see prepare())."""

    @staticmethod
    def prepare_cli_argument_parser() -> argparse.ArgumentParser:
        """Create and return ArgumentParser with common launcher options.

        Callers add their own options on top, then parse.
        """
        parser = argparse.ArgumentParser(add_help=False)

        parser.add_argument(
            "--config",
            default=None,
            help=f"Path to config file (default: {DEFAULT_CONFIG_FILE})"
        )
        parser.add_argument(
            "--no-banner",
            action="store_true",
            help="Suppress startup banner"
        )
        parser.add_argument(
            "--no-color",
            action="store_true",
            help="Disable colored logging (use plain text)"
        )
        parser.add_argument(
            "--log-level",
            default=None,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Log level (default: INFO in production, DEBUG otherwise)"
        )

        return parser

    @staticmethod
    def setup_logging(use_color: bool, level: int | str = logging.INFO):
        """Setup logging based on color preference.

        Args:
            use_color: If True, use Rich colored logging; if False, use plain text
            level: Root log level
        """
        if not use_color:
            logging.basicConfig(
                level=level,
                format=PLAIN_FORMAT,
                datefmt='%Y-%m-%d %H:%M:%S',
                force=True,
            )
        else:
            logging.basicConfig(
                level=level,
                format='%(message)s',
                handlers=[RichHandler(
                    show_time=True,
                    show_level=True,
                    show_path=False,
                    rich_tracebacks=True,
                    tracebacks_show_locals=False,
                    log_time_format='%Y-%m-%d %H:%M:%S'
                )],
                force=True,
            )

    @staticmethod
    def resolve_log_level(settings: ServerSettings, override: str | None) -> int:
        if override:
            return getattr(logging, override.upper())
        return logging.INFO if settings.is_production else logging.DEBUG

    @staticmethod
    def determine_config_file(config_arg: str | None) -> str:
        """Determine and validate config file from argument.

        Raises:
            SystemExit: If explicitly provided config file doesn't exist
        """
        logger = logging.getLogger("launch")

        if config_arg is not None:
            # Explicit --config must exist
            if not Path(config_arg).exists():
                logger.error(f"Configuration file not found: {config_arg}")
                logger.error("Explicitly provided config file must exist. Exiting.")
                sys.exit(1)
            logger.info(f"Using config file: {config_arg}")
            return config_arg

        if not Path(DEFAULT_CONFIG_FILE).exists():
            logger.debug(f"Default config file not found: {DEFAULT_CONFIG_FILE}")
        else:
            logger.info(f"Using default config file: {DEFAULT_CONFIG_FILE}")
        return DEFAULT_CONFIG_FILE

    @staticmethod
    def print_banner(settings: ServerSettings):
        logger = logging.getLogger("launch")
        mode = f"cluster ({settings.workers} workers)" if settings.cluster_mode else "standalone"
        realtime = " ".join(settings.realtime_command) if settings.realtime_command else "disabled"
        logger.info("=" * 60)
        logger.info(f"higgs-server {__version__}")
        logger.info(f"Environment: {settings.env}   Mode: {mode}")
        logger.info(f"HTTP: {settings.host}:{settings.port}   Realtime: {settings.realtime_port} ({realtime})")
        logger.info("=" * 60)

    @classmethod
    def prepare(cls, parser: argparse.ArgumentParser, args_config_builder=None,
                argv: list[str] | None = None) -> tuple[argparse.Namespace, ServerSettings]:
        """Common startup: .env, arguments, configuration, logging, banner.

        Args:
            parser: Parser built on top of prepare_cli_argument_parser()
            args_config_builder: Callable(args) -> dict of config overrides
            argv: Arguments to parse (default: sys.argv)

        Returns:
            Tuple of (parsed arguments, resolved settings)
        """
        env_loaded, env_file_path = load_dotenv_if_available()
        args = parser.parse_args(argv)

        # Provisional logging so configuration problems are visible
        cls.setup_logging(use_color=not args.no_color, level=args.log_level or logging.INFO)
        logger = logging.getLogger("launch")
        if env_loaded and env_file_path:
            logger.info(f"Loaded environment from {env_file_path}")

        config_file = cls.determine_config_file(args.config)
        args_config: dict[str, Any] = args_config_builder(args) if args_config_builder else {}
        manager = create_configuration_manager(
            config_file=config_file,
            args_config=args_config,
            defaults=DEFAULTS,
        )
        manager.log_sources()

        try:
            settings = load_settings(manager)
        except ValueError as e:
            logger.error(f"Invalid configuration: {e}")
            sys.exit(1)

        cls.setup_logging(
            use_color=not args.no_color,
            level=cls.resolve_log_level(settings, args.log_level),
        )

        if not args.no_banner:
            cls.print_banner(settings)

        return args, settings
