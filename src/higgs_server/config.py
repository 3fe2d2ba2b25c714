"""Typed server settings resolved from the configuration manager."""

import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Any

from higgs_server.management.configuration import ConfigurationManager

_logger = logging.getLogger("cfg")

DEFAULTS: dict[str, Any] = {
    "env": "development",
    "host": "0.0.0.0",
    "port": 3000,
    "realtime_port": 3001,
    "realtime_command": None,
    "realtime_restart_sec": 5.0,
    "realtime_restart_max": 0,
    "cluster_mode": False,
    "workers": None,
    "worker_restart_sec": 0.0,
    "worker_restart_max": 0,
    "restart_window": 60.0,
    "shutdown_timeout": 30.0,
    "supervisor_stop_timeout": 35.0,
    "rate_limit_window": 900.0,
    "rate_limit_max": None,
}

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class ServerSettings:
    """Settings shared by the supervisor and every worker.

    Attributes:
        env: Environment name; only affects log verbosity and error redaction
        host: HTTP bind address
        port: HTTP listen port
        realtime_port: Port handed to the realtime child via its environment
        realtime_command: argv of the realtime transport process (None disables it)
        realtime_restart_sec: Fixed delay before respawning a crashed realtime child
        realtime_restart_max: Max realtime restarts in restart_window (0 = unlimited)
        cluster_mode: Run the multi-worker supervisor instead of one standalone worker
        workers: Number of worker processes in cluster mode
        worker_restart_sec: Delay before replacing an exited worker
        worker_restart_max: Max replacements per slot in restart_window (0 = unlimited)
        restart_window: Time window for restart counting (seconds)
        shutdown_timeout: Worker drain deadline (seconds)
        supervisor_stop_timeout: How long the supervisor waits for workers to exit
        rate_limit_window: Admission policy window (seconds)
        rate_limit_max: Requests per client per window
        nats: Optional NATS section (host, port, required, subject_prefix)
    """
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 3000
    realtime_port: int = 3001
    realtime_command: list[str] | None = None
    realtime_restart_sec: float = 5.0
    realtime_restart_max: int = 0
    cluster_mode: bool = False
    workers: int = 1
    worker_restart_sec: float = 0.0
    worker_restart_max: int = 0
    restart_window: float = 60.0
    shutdown_timeout: float = 30.0
    supervisor_stop_timeout: float = 35.0
    rate_limit_window: float = 900.0
    rate_limit_max: int = 10000
    nats: dict[str, Any] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def subject_prefix(self) -> str:
        return self.nats.get("subject_prefix", "svc")


def _as_int(config: dict[str, Any], key: str) -> int:
    value = config[key]
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for '{key}': {value!r}") from e


def _as_float(config: dict[str, Any], key: str) -> float:
    value = config[key]
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid number for '{key}': {value!r}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _as_command(value: Any) -> list[str] | None:
    if not value:
        return None
    if isinstance(value, str):
        return shlex.split(value)
    return [str(part) for part in value]


def load_settings(manager: ConfigurationManager) -> ServerSettings:
    """Resolve the merged configuration into ServerSettings.

    Raises:
        ValueError: If a numeric option cannot be converted
    """
    config = {**DEFAULTS, **manager.resolve_config()}
    env = str(config["env"])

    workers = config["workers"]
    if workers in (None, ""):
        workers = os.cpu_count() or 1
        config["workers"] = workers

    rate_limit_max = config["rate_limit_max"]
    if rate_limit_max in (None, ""):
        config["rate_limit_max"] = 1000 if env == "production" else 10000

    settings = ServerSettings(
        env=env,
        host=str(config["host"]),
        port=_as_int(config, "port"),
        realtime_port=_as_int(config, "realtime_port"),
        realtime_command=_as_command(config["realtime_command"]),
        realtime_restart_sec=_as_float(config, "realtime_restart_sec"),
        realtime_restart_max=_as_int(config, "realtime_restart_max"),
        cluster_mode=_as_bool(config["cluster_mode"]),
        workers=max(1, _as_int(config, "workers")),
        worker_restart_sec=_as_float(config, "worker_restart_sec"),
        worker_restart_max=_as_int(config, "worker_restart_max"),
        restart_window=_as_float(config, "restart_window"),
        shutdown_timeout=_as_float(config, "shutdown_timeout"),
        supervisor_stop_timeout=_as_float(config, "supervisor_stop_timeout"),
        rate_limit_window=_as_float(config, "rate_limit_window"),
        rate_limit_max=_as_int(config, "rate_limit_max"),
        nats=dict(config.get("nats") or {}),
    )
    _logger.debug(f"Resolved settings: {settings}")
    return settings
