"""Monitoring framework for worker status and health checking."""
from higgs_server.monitoring.create_monitor import create_monitor
from higgs_server.monitoring.status import Status

__all__ = [
    "Status",
    "create_monitor",
]
