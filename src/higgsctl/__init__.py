"""higgsctl - command line client for running higgs-server workers."""

from higgsctl.client import HealthInfo, WorkerClient

__all__ = ["HealthInfo", "WorkerClient"]
