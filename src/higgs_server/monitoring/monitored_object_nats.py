import asyncio
import os
import socket

from serverish.base import dt_utcnow_array
from serverish.messenger import get_publisher

from higgs_server.monitoring.monitored_object import ReportingMonitoredObject


class MessengerMonitoredObject(ReportingMonitoredObject):
    """MonitoredObject that sends reports to NATS via serverish.Messenger.

    Subjects:
    - Status updates: <prefix>.status.<name> (on status change)
    - Heartbeat: <prefix>.heartbeat.<name> (periodic, default 10s)

    Args:
        name: Monitor name (e.g., "higgs.worker.0")
        messenger: Open serverish Messenger instance
        check_interval: Heartbeat interval in seconds (default: 10.0)
        subject_prefix: NATS subject prefix (default: "svc")
        parent_name: Optional parent name for grouping in displays
            (workers use the supervisor name)
    """

    def __init__(
        self,
        name: str,
        messenger,
        check_interval: float = 10.0,
        healthcheck_interval: float = 30.0,
        subject_prefix: str = "svc",
        parent_name: str | None = None,
    ):
        super().__init__(name, check_interval, healthcheck_interval)
        self.messenger = messenger
        self.subject_prefix = subject_prefix
        self.parent_name = parent_name

        self._cached_pid = os.getpid()
        self._cached_hostname = socket.gethostname()

        self._status_publisher = None
        self._heartbeat_publisher = None

        if messenger is not None:
            self._status_publisher = get_publisher(f"{self.subject_prefix}.status.{self.name}")
            self._heartbeat_publisher = get_publisher(f"{self.subject_prefix}.heartbeat.{self.name}")

    def _on_status_changed(self):
        """Called when status changes - trigger immediate status send."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._send_status_report())

    async def _send_status_report(self):
        """Send status report to <prefix>.status.<name>."""
        if self._status_publisher is None:
            self.logger.debug("Status publisher not set, cannot send status report")
            return
        try:
            report = await self.get_full_report()
            data = report.to_dict()
            if self.parent_name:
                data["parent"] = self.parent_name
            data["pid"] = self._cached_pid
            data["hostname"] = self._cached_hostname
            await self._status_publisher.publish(data=data)
            self.logger.debug(f"Sent STATUS report to {self._status_publisher.subject}")
        except Exception as e:
            self.logger.error(f"Failed to send STATUS report: {e}")

    async def _send_heartbeat(self):
        """Send heartbeat to <prefix>.heartbeat.<name>."""
        if self._heartbeat_publisher is None:
            self.logger.debug("Heartbeat publisher not set, cannot send heartbeat")
            return
        try:
            data = {
                "service_id": self.name,
                "timestamp": dt_utcnow_array(),
                "status": self.get_status().value,
            }
            await self._heartbeat_publisher.publish(data=data)
            self.logger.debug(f"Sent HEARTBEAT to {self._heartbeat_publisher.subject}")
        except Exception as e:
            self.logger.error(f"Failed to send HEARTBEAT: {e}")
