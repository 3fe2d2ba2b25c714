"""WorkerClient: HTTP access to the health and metrics endpoints of a worker.

Example usage:

    from higgsctl import WorkerClient

    client = WorkerClient("http://localhost:3000")
    info = client.health()
    print(info.status, info.services)
    print(client.metrics())
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HealthInfo:
    """Parsed /health response of one worker."""
    status: str
    http_status: int
    services: dict[str, str] = field(default_factory=dict)
    pid: int | None = None
    worker: int | None = None
    uptime: float | None = None
    memory: dict[str, int] = field(default_factory=dict)
    timestamp: str | None = None
    environment: str | None = None
    monitoring: dict[str, Any] | None = None

    @property
    def is_healthy(self) -> bool:
        return self.http_status == 200 and self.status == "healthy"

    @classmethod
    def from_response(cls, http_status: int, data: dict[str, Any]) -> "HealthInfo":
        return cls(
            status=data.get("status", "unknown"),
            http_status=http_status,
            services=dict(data.get("services") or {}),
            pid=data.get("pid"),
            worker=data.get("worker"),
            uptime=data.get("uptime"),
            memory=dict(data.get("memory") or {}),
            timestamp=data.get("timestamp"),
            environment=data.get("environment"),
            monitoring=data.get("monitoring"),
        )


class WorkerClient:
    """Synchronous client for the worker HTTP boundary.

    Args:
        base_url: Worker address, e.g. http://localhost:3000
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, base_url: str = "http://localhost:3000", timeout: float = 5.0,
                 transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def health(self) -> HealthInfo:
        """Fetch /health. A 503 is a valid (degraded) answer, not an error.

        Raises:
            httpx.HTTPError: If the worker is unreachable or answers garbage
        """
        with self._client() as client:
            response = client.get("/health")
        if response.status_code not in (200, 503):
            response.raise_for_status()
        logger.debug(f"/health -> {response.status_code}")
        return HealthInfo.from_response(response.status_code, response.json())

    def metrics(self) -> str:
        """Fetch /metrics as raw Prometheus text."""
        with self._client() as client:
            response = client.get("/metrics")
        response.raise_for_status()
        return response.text
