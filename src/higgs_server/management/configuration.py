"""Configuration management with multiple sources and precedence."""

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ${VAR_NAME} environment variables in config.

    Pattern: ${VAR_NAME} - strict format (alphanumeric + underscore only)

    Behavior:
        - If VAR_NAME is set: Replace with environment variable value
        - If VAR_NAME is unset: Keep placeholder and log warning
        - If the entire value is ${VAR} and result is numeric, convert to int/float

    Examples:
        >>> os.environ["PORT"] = "3000"
        >>> expand_env_vars("${PORT}")  # Pure variable reference
        3000
        >>> expand_env_vars("http://localhost:${PORT}/health")
        'http://localhost:3000/health'
        >>> expand_env_vars("key: ${MISSING}")  # MISSING not in env
        'key: ${MISSING}'

    Args:
        value: Config value to expand (can be str, dict, list, or other types)

    Returns:
        Value with environment variables expanded (with type conversion for numbers)
    """
    if isinstance(value, str):
        pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}'

        full_match = re.fullmatch(pattern, value)
        if full_match:
            var_name = full_match.group(1)
            env_value = os.getenv(var_name)
            if env_value is None:
                logging.getLogger("cfg").warning(
                    f"Environment variable '${{{var_name}}}' not set, keeping placeholder"
                )
                return value

            try:
                if '.' in env_value:
                    return float(env_value)
                else:
                    return int(env_value)
            except ValueError:
                return env_value

        def replacer(match):
            var_name = match.group(1)
            env_value = os.getenv(var_name)
            if env_value is None:
                logging.getLogger("cfg").warning(
                    f"Environment variable '${{{var_name}}}' not set, keeping placeholder"
                )
                return match.group(0)
            return env_value

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    else:
        return value


class ConfigSource(ABC):
    """Base class for configuration sources."""

    def __init__(self, priority: int = 0):
        self.priority = priority  # Higher number = higher priority

    @abstractmethod
    def load(self) -> dict[str, Any]:
        """Load configuration data."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if source is available."""
        pass


class FileConfigSource(ConfigSource):
    """Configuration from YAML file."""

    def __init__(self, file_path: str | Path, priority: int = 10):
        super().__init__(priority)
        self.file_path = file_path

    def load(self) -> dict[str, Any]:
        """Load configuration from file and expand environment variables."""
        try:
            with open(self.file_path) as f:
                config = yaml.safe_load(f) or {}
            return expand_env_vars(config)
        except Exception as e:
            logging.getLogger("cfg").warning(f"Failed to load config from {self.file_path}: {e}")
            return {}

    def is_available(self) -> bool:
        """Check if file exists."""
        return Path(self.file_path).exists()


class EnvConfigSource(ConfigSource):
    """Configuration from the process environment.

    Recognized variables and the config keys they map to:
        APP_ENV -> env, HOST -> host, PORT -> port,
        REALTIME_PORT -> realtime_port, REALTIME_COMMAND -> realtime_command,
        CLUSTER_MODE -> cluster_mode, NUM_WORKERS -> workers,
        SHUTDOWN_TIMEOUT -> shutdown_timeout,
        NATS_HOST -> nats.host, NATS_PORT -> nats.port
    """

    VARIABLES = {
        "APP_ENV": "env",
        "HOST": "host",
        "PORT": "port",
        "REALTIME_PORT": "realtime_port",
        "REALTIME_COMMAND": "realtime_command",
        "CLUSTER_MODE": "cluster_mode",
        "NUM_WORKERS": "workers",
        "SHUTDOWN_TIMEOUT": "shutdown_timeout",
        "NATS_HOST": "nats.host",
        "NATS_PORT": "nats.port",
    }

    def __init__(self, environ: dict[str, str] | None = None, priority: int = 5):
        super().__init__(priority)
        self.environ = environ if environ is not None else os.environ

    def load(self) -> dict[str, Any]:
        """Collect the recognized variables into a nested dict (values stay strings)."""
        config: dict[str, Any] = {}
        for var_name, key in self.VARIABLES.items():
            value = self.environ.get(var_name)
            if value is None or value == "":
                continue
            target = config
            *parents, leaf = key.split(".")
            for parent in parents:
                target = target.setdefault(parent, {})
            target[leaf] = value
        if "nats" in config:
            # NATS from env is best-effort: never block startup on it
            config["nats"].setdefault("required", False)
        return config

    def is_available(self) -> bool:
        return any(self.environ.get(name) for name in self.VARIABLES)


class ArgsConfigSource(ConfigSource):
    """Configuration from command line arguments or dict."""

    def __init__(self, config_dict: dict[str, Any], priority: int = 30):
        super().__init__(priority)
        self.config_dict = config_dict

    def load(self) -> dict[str, Any]:
        """Return provided configuration, skipping options left unset."""
        return {k: v for k, v in self.config_dict.items() if v is not None}

    def is_available(self) -> bool:
        """Always available."""
        return True


class DefaultConfigSource(ConfigSource):
    """Default configuration values."""

    def __init__(self, defaults: dict[str, Any] | None = None, priority: int = 0):
        super().__init__(priority)
        self.defaults = defaults or {}

    def load(self) -> dict[str, Any]:
        """Return default configuration."""
        return self.defaults

    def is_available(self) -> bool:
        """Always available."""
        return True


class ConfigurationManager:
    """Manages configuration from multiple sources with precedence."""

    def __init__(self):
        self.logger = logging.getLogger("cfg")
        self.sources: list[ConfigSource] = []

    def add_source(self, source: ConfigSource):
        """Add a configuration source."""
        self.sources.append(source)
        self.sources.sort(key=lambda s: s.priority, reverse=True)
        self.logger.debug(f"Added config source with priority {source.priority}")

    def log_sources(self):
        """Log all configuration sources and their availability."""
        if not self.sources:
            self.logger.info("Configuration sources: none")
            return

        self.logger.info("Configuration sources (priority order, highest first):")
        for source in self.sources:
            source_name = type(source).__name__.replace("ConfigSource", "")
            status = "✓ available" if source.is_available() else "✗ unavailable"

            details = ""
            if isinstance(source, FileConfigSource):
                details = f" ({source.file_path})"
            elif isinstance(source, ArgsConfigSource):
                details = " (command-line args)"

            self.logger.info(f"  [{source.priority:2d}] {source_name:15s} {status}{details}")

    def resolve_config(self) -> dict[str, Any]:
        """Merge all available sources, lowest priority first."""
        merged_config = {}

        for source in reversed(self.sources):
            if not source.is_available():
                continue

            try:
                source_config = source.load()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Merged config from {type(source).__name__}")
            except Exception as e:
                self.logger.error(f"Error loading from {type(source).__name__}: {e}")

        return merged_config

    def _deep_merge(self, base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                isinstance(result[key], dict) and
                isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


def create_configuration_manager(
    config_file: str | Path | None = None,
    args_config: dict[str, Any] | None = None,
    defaults: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> ConfigurationManager:
    """Create a configuration manager with the standard sources.

    Precedence (highest first): args, file, environment, defaults.
    """
    manager = ConfigurationManager()

    if defaults:
        manager.add_source(DefaultConfigSource(defaults))

    manager.add_source(EnvConfigSource(environ))

    if config_file:
        manager.add_source(FileConfigSource(config_file))

    if args_config:
        manager.add_source(ArgsConfigSource(args_config))

    return manager
