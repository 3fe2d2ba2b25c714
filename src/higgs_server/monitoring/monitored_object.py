"""Worker status holders for health checks and status reports."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from higgs_server.monitoring.status import Status, StatusReport


async def _call(callback):
    if asyncio.iscoroutinefunction(callback):
        return await callback()
    return callback()


class MonitoredObject:
    """Holds a status plus the callbacks that refine it.

    Healthcheck callbacks may override the stored status with a worse one;
    metric callbacks contribute to the ``metrics`` section of reports.
    """

    def __init__(self, name: str):
        self.name = name
        self._status = Status.UNKNOWN
        self._message: str | None = None
        self._healthcheck_callbacks: list[Callable[[], Status | None]] = []
        self._metric_callbacks: list[Callable[[], dict[str, Any]]] = []
        self.logger = logging.getLogger(f"mon.{name}")

    async def start_monitoring(self):
        pass

    async def stop_monitoring(self):
        pass

    def get_status(self) -> Status:
        return self._status

    def set_status(self, status: Status, message: str | None = None):
        """Store a new status; subclasses publish it from _on_status_changed()."""
        changed = status != self._status
        self._status = status
        self._message = message
        self.logger.debug(f"Status {status}: {message or ''}")
        if changed:
            self._on_status_changed()

    def _on_status_changed(self):
        pass

    def add_healthcheck_cb(self, callback: Callable[[], Status | None]):
        """Register a sync or async check returning a Status, or None for no opinion.

        Example:
            >>> monitor.add_healthcheck_cb(lambda: Status.DEGRADED if overloaded() else None)
        """
        self._healthcheck_callbacks.append(callback)

    def add_metric_cb(self, callback: Callable[[], dict[str, Any]]):
        self._metric_callbacks.append(callback)

    async def healthcheck(self) -> Status:
        """First non-OK callback result, ERROR if a callback raises, else the stored status."""
        for callback in self._healthcheck_callbacks:
            try:
                status = await _call(callback)
            except Exception as e:
                self.logger.warning(f"Healthcheck callback failed: {e}")
                return Status.ERROR
            if status is not None and status != Status.OK:
                return status
        return self._status

    async def get_full_report(self) -> StatusReport:
        metrics: dict[str, Any] = {}
        for callback in self._metric_callbacks:
            try:
                data = await _call(callback)
            except Exception as e:
                self.logger.warning(f"Metric callback failed: {e}")
                continue
            if isinstance(data, dict):
                metrics.update(data)

        return StatusReport(
            name=self.name,
            status=self._status,
            message=self._message,
            details={"metrics": metrics} if metrics else None,
        )


class ReportingMonitoredObject(MonitoredObject):
    """MonitoredObject that runs heartbeat and healthcheck loops while started."""

    def __init__(self, name: str, check_interval: float = 10.0, healthcheck_interval: float = 30.0):
        super().__init__(name)
        self.check_interval = check_interval
        self.healthcheck_interval = healthcheck_interval
        self._heartbeat_task: asyncio.Task | None = None
        self._healthcheck_task: asyncio.Task | None = None
        self._running = False

    async def start_monitoring(self):
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._healthcheck_task = asyncio.create_task(self._healthcheck_loop())
        self.logger.info(
            f"Monitoring started: heartbeat every {self.check_interval}s, "
            f"healthcheck every {self.healthcheck_interval}s"
        )

    async def stop_monitoring(self):
        self._running = False
        for task in (self._heartbeat_task, self._healthcheck_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None
        self._healthcheck_task = None
        self.logger.info("Monitoring stopped")

    async def _heartbeat_loop(self):
        while self._running:
            try:
                await self._send_heartbeat()
            except Exception as e:
                self.logger.error(f"Heartbeat failed: {e}")
            await asyncio.sleep(self.check_interval)

    async def _healthcheck_loop(self):
        while self._running:
            status = await self.healthcheck()
            if status != self._status:
                self.set_status(status, "Updated from healthcheck")
            await asyncio.sleep(self.healthcheck_interval)

    async def _send_heartbeat(self):
        self.logger.debug(f"Heartbeat from {self.name}")


class DummyMonitoredObject(MonitoredObject):
    """Status holder used when NATS is not available; reports nowhere."""
