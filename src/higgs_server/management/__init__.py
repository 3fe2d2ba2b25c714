"""Worker management components."""

from .configuration import (
    ArgsConfigSource,
    ConfigSource,
    ConfigurationManager,
    DefaultConfigSource,
    EnvConfigSource,
    FileConfigSource,
    create_configuration_manager,
)


__all__ = [
    "ConfigurationManager",
    "ConfigSource",
    "FileConfigSource",
    "ArgsConfigSource",
    "DefaultConfigSource",
    "EnvConfigSource",
    "create_configuration_manager"
]
