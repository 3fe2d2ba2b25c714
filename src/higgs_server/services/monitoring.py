"""Monitoring facade: request/error counters, Prometheus text and NATS status.

Counters live in the worker's memory only; each worker exposes its own
numbers on /metrics. When a messenger is open the worker status and
heartbeats are also published through serverish (see MessengerMonitoredObject).
"""

import time
import traceback
from collections import Counter, deque
from typing import Any

import psutil

from higgs_server.base_service import BaseServiceFacade, facade
from higgs_server.monitoring import Status, create_monitor
from higgs_server.monitoring.monitored_object import MonitoredObject

# Upper bounds of the request duration histogram, in seconds
DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# Share of failed (5xx) requests above which the worker reports degraded
ERROR_RATE_THRESHOLD = 0.05

MAX_ERROR_RECORDS = 1000


@facade("monitoring")
class MonitoringFacade(BaseServiceFacade):
    """In-process metrics registry of one worker."""

    def __init__(self, ctx=None):
        super().__init__(ctx)
        self.requests: Counter = Counter()  # (method, route, status) -> count
        self.duration_buckets: Counter = Counter()  # (route, le) -> count
        self.duration_sum: dict[str, float] = {}
        self.duration_count: Counter = Counter()
        self.errors: Counter = Counter()  # kind -> count
        self.error_records: deque[dict[str, Any]] = deque(maxlen=MAX_ERROR_RECORDS)
        self.started_at = time.time()
        self.monitor: MonitoredObject | None = None

    async def initialize(self):
        settings = self.ctx.settings if self.ctx else None
        slot = self.ctx.slot if self.ctx else 0
        prefix = settings.subject_prefix if settings else "svc"
        self.monitor = create_monitor(
            f"higgs.worker{slot}",
            self.messenger,
            subject_prefix=prefix,
            parent_name="higgs",
        )
        self.monitor.add_healthcheck_cb(self._check_error_rate)
        self.monitor.add_metric_cb(self._metric_summary)
        await self.monitor.start_monitoring()
        self.monitor.set_status(Status.OK, "Worker started")
        self.started_at = time.time()
        self.svc_logger.info(f"Monitoring initialized ({type(self.monitor).__name__})")

    async def close(self):
        if self.monitor is None:
            return
        self.monitor.set_status(Status.SHUTDOWN, "Worker shutting down")
        await self.monitor.stop_monitoring()

    def record_http_request(self, method: str, route: str, status: int, duration_ms: float):
        """Count one finished HTTP request."""
        self.requests[(method.upper(), route, int(status))] += 1
        seconds = duration_ms / 1000.0
        self.duration_sum[route] = self.duration_sum.get(route, 0.0) + seconds
        self.duration_count[route] += 1
        for le in DURATION_BUCKETS:
            if seconds <= le:
                self.duration_buckets[(route, le)] += 1

    def record_error(self, err: BaseException | str, kind: str):
        """Count an error by kind and keep a bounded record of it."""
        self.errors[kind] += 1
        record = {
            "kind": kind,
            "message": str(err),
            "type": type(err).__name__ if isinstance(err, BaseException) else "str",
            "timestamp": time.time(),
        }
        if isinstance(err, BaseException) and err.__traceback__ is not None:
            record["traceback"] = "".join(traceback.format_exception(err))
        self.error_records.append(record)
        self.svc_logger.debug(f"Recorded {kind}: {err}")

    @property
    def total_requests(self) -> int:
        return sum(self.requests.values())

    @property
    def failed_requests(self) -> int:
        return sum(count for (_, _, status), count in self.requests.items() if status >= 500)

    def error_rate(self) -> float:
        total = self.total_requests
        return self.failed_requests / total if total else 0.0

    def _check_error_rate(self) -> Status | None:
        if self.error_rate() > ERROR_RATE_THRESHOLD:
            return Status.DEGRADED
        return None

    def _metric_summary(self) -> dict[str, Any]:
        return {
            "requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "errors": sum(self.errors.values()),
        }

    def get_health_status(self) -> dict[str, Any]:
        """Return {'status': 'healthy'|'degraded', 'detail': {...}}."""
        rate = self.error_rate()
        status = "degraded" if rate > ERROR_RATE_THRESHOLD else "healthy"
        return {
            "status": status,
            "detail": {
                "requests": self.total_requests,
                "error_rate": round(rate, 4),
                "errors": dict(self.errors),
            },
        }

    def get_metrics(self) -> str:
        """Render all counters in the Prometheus text exposition format."""
        lines = [
            "# HELP higgs_http_requests_total Total HTTP requests handled by this worker.",
            "# TYPE higgs_http_requests_total counter",
        ]
        for (method, route, status), count in sorted(self.requests.items()):
            lines.append(
                f'higgs_http_requests_total{{method="{method}",route="{_escape(route)}",'
                f'status="{status}"}} {count}'
            )

        lines += [
            "# HELP higgs_http_request_duration_seconds HTTP request duration.",
            "# TYPE higgs_http_request_duration_seconds histogram",
        ]
        for route in sorted(self.duration_count):
            label = _escape(route)
            for le in DURATION_BUCKETS:
                lines.append(
                    f'higgs_http_request_duration_seconds_bucket{{route="{label}",le="{le}"}} '
                    f'{self.duration_buckets[(route, le)]}'
                )
            lines.append(
                f'higgs_http_request_duration_seconds_bucket{{route="{label}",le="+Inf"}} '
                f'{self.duration_count[route]}'
            )
            lines.append(
                f'higgs_http_request_duration_seconds_sum{{route="{label}"}} '
                f'{self.duration_sum[route]:.6f}'
            )
            lines.append(
                f'higgs_http_request_duration_seconds_count{{route="{label}"}} '
                f'{self.duration_count[route]}'
            )

        lines += [
            "# HELP higgs_errors_total Errors recorded by kind.",
            "# TYPE higgs_errors_total counter",
        ]
        for kind, count in sorted(self.errors.items()):
            lines.append(f'higgs_errors_total{{kind="{_escape(kind)}"}} {count}')

        lines += [
            "# HELP higgs_uptime_seconds Seconds since the monitoring facade started.",
            "# TYPE higgs_uptime_seconds gauge",
            f"higgs_uptime_seconds {time.time() - self.started_at:.3f}",
        ]
        lines += _process_metrics(psutil.Process())
        return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")



def _process_metrics(process: psutil.Process) -> list[str]:
    """Standard process_* series for the worker process."""
    with process.oneshot():
        cpu = process.cpu_times()
        memory = process.memory_info()
        started = process.create_time()
        fds = process.num_fds() if hasattr(process, "num_fds") else None

    lines = [
        "# HELP process_cpu_seconds_total Total user and system CPU time spent in seconds.",
        "# TYPE process_cpu_seconds_total counter",
        f"process_cpu_seconds_total {cpu.user + cpu.system:.2f}",
        "# HELP process_resident_memory_bytes Resident memory size in bytes.",
        "# TYPE process_resident_memory_bytes gauge",
        f"process_resident_memory_bytes {memory.rss}",
        "# HELP process_virtual_memory_bytes Virtual memory size in bytes.",
        "# TYPE process_virtual_memory_bytes gauge",
        f"process_virtual_memory_bytes {memory.vms}",
        "# HELP process_start_time_seconds Start time of the process since unix epoch in seconds.",
        "# TYPE process_start_time_seconds gauge",
        f"process_start_time_seconds {started:.2f}",
    ]
    if fds is not None:
        lines += [
            "# HELP process_open_fds Number of open file descriptors.",
            "# TYPE process_open_fds gauge",
            f"process_open_fds {fds}",
        ]
    return lines
