"""Tests for monitoring system."""
import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from higgs_server.monitoring import Status, create_monitor
from higgs_server.monitoring.monitored_object import (
    DummyMonitoredObject,
    MonitoredObject,
    ReportingMonitoredObject,
)
from higgs_server.monitoring.monitored_object_nats import MessengerMonitoredObject
from higgs_server.monitoring.status import StatusReport
from higgs_server.services.monitoring import ERROR_RATE_THRESHOLD, MonitoringFacade


def test_status_report_to_dict():
    report = StatusReport("higgs.worker0", Status.OK, message="up")
    data = report.to_dict()
    assert data["status"] == "ok"
    assert data["message"] == "up"
    assert len(data["timestamp"]) == 7
    assert "details" not in data


class TestMonitoredObject:
    """Tests for MonitoredObject base class."""

    def test_set_status(self):
        monitor = MonitoredObject("test")
        assert monitor.get_status() == Status.UNKNOWN
        monitor.set_status(Status.OK, "All good")
        assert monitor.get_status() == Status.OK

    @pytest.mark.asyncio
    async def test_healthcheck_unhealthy_callback_wins(self):
        monitor = MonitoredObject("test")
        monitor.set_status(Status.OK)
        monitor.add_healthcheck_cb(lambda: None)
        monitor.add_healthcheck_cb(lambda: Status.DEGRADED)

        assert await monitor.healthcheck() == Status.DEGRADED

    @pytest.mark.asyncio
    async def test_healthcheck_async_callback(self):
        monitor = MonitoredObject("test")
        monitor.set_status(Status.OK)

        async def healthcheck():
            return Status.DEGRADED

        monitor.add_healthcheck_cb(healthcheck)
        assert await monitor.healthcheck() == Status.DEGRADED

    @pytest.mark.asyncio
    async def test_failing_callback_reports_error(self):
        monitor = MonitoredObject("test")
        monitor.set_status(Status.OK)

        def broken():
            raise RuntimeError("check crashed")

        monitor.add_healthcheck_cb(broken)
        assert await monitor.healthcheck() == Status.ERROR

    @pytest.mark.asyncio
    async def test_full_report_merges_metrics(self):
        monitor = MonitoredObject("higgs.worker0")
        monitor.set_status(Status.OK, "serving")
        monitor.add_metric_cb(lambda: {"requests": 10})
        monitor.add_metric_cb(lambda: {"errors": 1})

        report = await monitor.get_full_report()

        assert report.status == Status.OK
        assert report.message == "serving"
        assert report.details == {"metrics": {"requests": 10, "errors": 1}}

    @pytest.mark.asyncio
    async def test_full_report_without_metrics_has_no_details(self):
        monitor = MonitoredObject("higgs.worker0")

        def broken():
            raise RuntimeError("no numbers")

        monitor.add_metric_cb(broken)
        report = await monitor.get_full_report()
        assert report.details is None


class TestReportingMonitoredObject:
    """Tests for ReportingMonitoredObject."""

    @pytest.mark.asyncio
    async def test_start_and_stop_loops(self):
        monitor = ReportingMonitoredObject("test", check_interval=0.1, healthcheck_interval=0.2)

        await monitor.start_monitoring()
        await asyncio.sleep(0.05)
        assert monitor._heartbeat_task is not None
        await monitor.stop_monitoring()

        assert not monitor._running
        assert monitor._heartbeat_task is None
        assert monitor._healthcheck_task is None

    @pytest.mark.asyncio
    async def test_healthcheck_loop_updates_status(self):
        monitor = ReportingMonitoredObject("test", check_interval=0.1, healthcheck_interval=0.2)
        monitor.set_status(Status.OK)
        monitor.add_healthcheck_cb(lambda: Status.ERROR)

        await monitor.start_monitoring()
        await asyncio.sleep(0.3)
        await monitor.stop_monitoring()

        assert monitor.get_status() == Status.ERROR


class TestCreateMonitor:
    """Tests for create_monitor factory."""

    def test_no_messenger_gives_dummy(self):
        monitor = create_monitor("higgs.worker0")
        assert isinstance(monitor, DummyMonitoredObject)
        assert monitor.name == "higgs.worker0"

    def test_closed_messenger_gives_dummy(self):
        messenger = Mock(is_open=False)
        assert isinstance(create_monitor("higgs.worker0", messenger), DummyMonitoredObject)

    def test_open_messenger_gives_nats_monitor(self):
        messenger = Mock(is_open=True)
        with patch("higgs_server.monitoring.monitored_object_nats.get_publisher") as get_publisher:
            monitor = create_monitor("higgs.worker1", messenger,
                                     subject_prefix="game", parent_name="higgs")

        assert isinstance(monitor, MessengerMonitoredObject)
        subjects = [call.args[0] for call in get_publisher.call_args_list]
        assert subjects == ["game.status.higgs.worker1", "game.heartbeat.higgs.worker1"]

    @pytest.mark.asyncio
    async def test_status_report_published_with_parent(self):
        publisher = Mock()
        publisher.publish = AsyncMock()
        with patch("higgs_server.monitoring.monitored_object_nats.get_publisher", return_value=publisher):
            monitor = MessengerMonitoredObject("higgs.worker0", Mock(is_open=True), parent_name="higgs")

        await monitor._send_status_report()

        data = publisher.publish.call_args.kwargs["data"]
        assert data["name"] == "higgs.worker0"
        assert data["parent"] == "higgs"
        assert "pid" in data


class TestMonitoringFacade:
    """In-process metrics of one worker."""

    @pytest.mark.asyncio
    async def test_lifecycle_sets_status(self):
        facade = MonitoringFacade()
        await facade.initialize()
        assert isinstance(facade.monitor, DummyMonitoredObject)
        assert facade.monitor.get_status() == Status.OK

        await facade.close()
        assert facade.monitor.get_status() == Status.SHUTDOWN

    def test_error_rate_drives_health(self):
        facade = MonitoringFacade()
        for _ in range(90):
            facade.record_http_request("get", "/api/v1/games", 200, 12.0)
        assert facade.get_health_status()["status"] == "healthy"

        for _ in range(10):
            facade.record_http_request("GET", "/api/v1/games", 502, 40.0)

        health = facade.get_health_status()
        assert facade.error_rate() == pytest.approx(0.1)
        assert facade.error_rate() > ERROR_RATE_THRESHOLD
        assert health["status"] == "degraded"
        assert health["detail"]["requests"] == 100
        assert facade._check_error_rate() == Status.DEGRADED

    def test_record_error_keeps_bounded_records(self):
        facade = MonitoringFacade()
        try:
            raise ValueError("bad move")
        except ValueError as e:
            facade.record_error(e, "UNCAUGHT_EXCEPTION")
        facade.record_error("socket hang up", "REALTIME_SPAWN_FAILED")

        assert facade.errors == {"UNCAUGHT_EXCEPTION": 1, "REALTIME_SPAWN_FAILED": 1}
        first, second = facade.error_records
        assert first["type"] == "ValueError"
        assert "bad move" in first["traceback"]
        assert second["type"] == "str"
        assert facade.error_records.maxlen == 1000

    def test_metrics_text(self):
        facade = MonitoringFacade()
        facade.record_http_request("GET", "/api/v1/games", 200, 30.0)
        facade.record_http_request("POST", "/api/v1/games", 500, 3.0)
        facade.record_error(RuntimeError("boom"), "UNHANDLED_ERROR")

        text = facade.get_metrics()

        assert "# TYPE higgs_http_requests_total counter" in text
        assert 'higgs_http_requests_total{method="GET",route="/api/v1/games",status="200"} 1' in text
        assert 'higgs_http_requests_total{method="POST",route="/api/v1/games",status="500"} 1' in text
        assert 'higgs_http_request_duration_seconds_bucket{route="/api/v1/games",le="0.005"} 1' in text
        assert 'higgs_http_request_duration_seconds_bucket{route="/api/v1/games",le="0.025"} 1' in text
        assert 'higgs_http_request_duration_seconds_bucket{route="/api/v1/games",le="0.05"} 2' in text
        assert 'higgs_http_request_duration_seconds_bucket{route="/api/v1/games",le="+Inf"} 2' in text
        assert 'higgs_http_request_duration_seconds_count{route="/api/v1/games"} 2' in text
        assert 'higgs_errors_total{kind="UNHANDLED_ERROR"} 1' in text
        assert "higgs_uptime_seconds " in text
        assert text.endswith("\n")

    def test_metrics_include_process_series(self):
        text = MonitoringFacade().get_metrics()
        values = {
            line.split(" ")[0]: float(line.split(" ")[1])
            for line in text.splitlines()
            if line.startswith("process_")
        }

        assert "# TYPE process_cpu_seconds_total counter" in text
        assert values["process_resident_memory_bytes"] > 0
        assert values["process_virtual_memory_bytes"] >= values["process_resident_memory_bytes"]
        assert values["process_start_time_seconds"] > 0
        assert values["process_open_fds"] > 0

    def test_label_values_are_escaped(self):
        facade = MonitoringFacade()
        facade.record_http_request("GET", 'we"ird', 200, 1.0)
        assert 'route="we\\"ird"' in facade.get_metrics()
