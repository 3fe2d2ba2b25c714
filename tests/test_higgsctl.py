"""Tests for the higgsctl client, display helpers and commands."""

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from higgsctl import HealthInfo, WorkerClient
from higgsctl.app import app
from higgsctl.display import display_health, display_metrics, format_bytes, format_uptime

HEALTHY = {
    "status": "healthy",
    "services": {"monitoring": "ready", "cache": "ready"},
    "pid": 4242,
    "worker": 0,
    "uptime": 3725.5,
    "memory": {"rss": 50 * 1024 * 1024, "vms": 300 * 1024 * 1024},
    "timestamp": "2026-10-19T10:00:00+00:00",
    "environment": "production",
    "monitoring": {"status": "healthy", "detail": {"requests": 12, "error_rate": 0.0, "errors": {}}},
}

DEGRADED = {**HEALTHY, "status": "degraded", "services": {"monitoring": "ready", "cache": "closing"}}

METRICS = (
    "# HELP higgs_http_requests_total Total HTTP requests handled by this worker.\n"
    "# TYPE higgs_http_requests_total counter\n"
    'higgs_http_requests_total{method="GET",route="/",status="200"} 3\n'
    "higgs_uptime_seconds 12.000\n"
)


def mock_transport(health_status=200, health_body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(health_status, json=health_body or HEALTHY)
        if request.url.path == "/metrics":
            return httpx.Response(200, text=METRICS)
        return httpx.Response(404, json={"error": "Not found"})
    return httpx.MockTransport(handler)


@pytest.fixture
def use_transport(monkeypatch):
    """Route every WorkerClient the commands create through a mock transport."""
    def install(transport):
        def factory(url, timeout=5.0):
            return WorkerClient(url, timeout=timeout, transport=transport)
        monkeypatch.setattr("higgsctl.commands.health.WorkerClient", factory)
        monkeypatch.setattr("higgsctl.commands.metrics.WorkerClient", factory)
    return install


class TestHealthInfo:

    def test_from_response(self):
        info = HealthInfo.from_response(200, HEALTHY)
        assert info.is_healthy
        assert info.services == {"monitoring": "ready", "cache": "ready"}
        assert info.memory["rss"] == 50 * 1024 * 1024

    def test_degraded_is_not_healthy(self):
        assert not HealthInfo.from_response(503, DEGRADED).is_healthy

    def test_missing_fields(self):
        info = HealthInfo.from_response(200, {})
        assert info.status == "unknown"
        assert info.services == {}
        assert not info.is_healthy


class TestWorkerClient:

    def test_health_accepts_503(self):
        client = WorkerClient("http://worker:3000/", transport=mock_transport(503, DEGRADED))
        info = client.health()
        assert info.http_status == 503
        assert info.services["cache"] == "closing"

    def test_health_other_errors_raise(self):
        client = WorkerClient(transport=mock_transport(500, {"error": "x"}))
        with pytest.raises(httpx.HTTPStatusError):
            client.health()

    def test_metrics_text(self):
        client = WorkerClient(transport=mock_transport())
        assert client.metrics() == METRICS


class TestDisplay:

    def test_format_uptime(self):
        assert format_uptime(None) == "-"
        assert format_uptime(42) == "42s"
        assert format_uptime(303) == "5m 3s"
        assert format_uptime(3725.5) == "1h 2m"
        assert format_uptime(2 * 86400 + 3 * 3600) == "2d 3h"

    def test_format_bytes(self):
        assert format_bytes(None) == "-"
        assert format_bytes(512) == "512 B"
        assert format_bytes(50 * 1024 * 1024) == "50.0 MiB"

    def test_display_health(self):
        console = Console(record=True, width=120)
        display_health(HealthInfo.from_response(200, HEALTHY), console)
        output = console.export_text()

        assert "HEALTHY" in output
        assert "worker 0" in output
        assert "pid 4242" in output
        assert "1h 2m" in output
        assert "cache" in output
        assert "● ready" in output
        assert "rss 50.0 MiB" in output
        assert "Monitoring: healthy" in output

    def test_display_metrics_filter(self):
        console = Console(record=True, width=200)
        display_metrics(METRICS, console, filter_prefix="higgs_uptime")
        output = console.export_text()

        assert "higgs_uptime_seconds 12.000" in output
        assert "higgs_http_requests_total" not in output


class TestCommands:

    def test_health_ok_exits_zero(self, use_transport):
        use_transport(mock_transport())
        result = CliRunner().invoke(app, ["health", "--url", "http://worker:3000"])
        assert result.exit_code == 0
        assert "HEALTHY" in result.output

    def test_health_degraded_exits_one(self, use_transport):
        use_transport(mock_transport(503, DEGRADED))
        result = CliRunner().invoke(app, ["health"])
        assert result.exit_code == 1
        assert "DEGRADED" in result.output

    def test_health_unreachable_exits_one(self, use_transport):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)
        use_transport(httpx.MockTransport(refuse))
        result = CliRunner().invoke(app, ["health"])
        assert result.exit_code == 1

    def test_metrics_with_match(self, use_transport):
        use_transport(mock_transport())
        result = CliRunner().invoke(app, ["metrics", "--match", "higgs_http"])
        assert result.exit_code == 0
        assert 'higgs_http_requests_total{method="GET",route="/",status="200"} 3' in result.output
        assert "higgs_uptime_seconds" not in result.output
