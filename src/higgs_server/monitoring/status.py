"""Worker status values and the report published on status changes."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from serverish.base import dt_utcnow_array


class Status(Enum):
    UNKNOWN = "unknown"
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"
    SHUTDOWN = "shutdown"

    def __str__(self) -> str:
        return self.value


@dataclass
class StatusReport:
    """Snapshot of a monitored worker, serialized onto <prefix>.status.<name>."""
    name: str
    status: Status
    message: str | None = None
    timestamp: list[int] | None = None  # UTC [Y, M, D, h, m, s, us]
    details: dict[str, Any] | None = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = dt_utcnow_array()

    def to_dict(self) -> dict[str, Any]:
        data = {"name": self.name, "status": self.status.value, "timestamp": self.timestamp}
        if self.message:
            data["message"] = self.message
        if self.details:
            data["details"] = self.details
        return data
