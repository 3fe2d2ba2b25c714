"""Pytest configuration for higgs-server tests."""

import pytest

from higgs_server.config import ServerSettings


@pytest.fixture
def settings():
    """Development settings with short timeouts and no realtime child."""
    return ServerSettings(
        env="development",
        host="127.0.0.1",
        port=0,
        shutdown_timeout=5.0,
        supervisor_stop_timeout=5.0,
        realtime_command=None,
    )
