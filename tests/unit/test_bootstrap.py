"""WorkerBootstrap tests: startup ordering and the fatal init path."""

import asyncio
import sys

import pytest

from higgs_server.base_service import FACADE_NAMES, ServiceState
from higgs_server.errors import ServiceInitError
from higgs_server.management.shutdown import ShutdownReason
from higgs_server.management.worker_bootstrap import WorkerBootstrap, default_facades
from tests.helpers.fakes import FakeListener, FakeMonitoring, facade_class
from tests.helpers.wait_helpers import wait_for_condition


class ListenerFactory:
    """Records whether the bootstrap ever asked for a listener."""

    def __init__(self, events):
        self.events = events
        self.calls = 0
        self.listener = None

    def __call__(self, app, ctx, sock):
        self.calls += 1
        self.listener = FakeListener(self.events)
        return self.listener


def test_default_facades_cover_all_subsystems():
    facades = default_facades()
    assert tuple(facades) == FACADE_NAMES
    assert all(cls.name == name for name, cls in facades.items())


@pytest.mark.asyncio
async def test_init_error_exits_one_without_listener_or_realtime(settings):
    events = []
    settings.realtime_command = [sys.executable, "-c", "import time; time.sleep(30)"]
    factory = ListenerFactory(events)
    bootstrap = WorkerBootstrap(
        settings,
        facades={
            "monitoring": facade_class("monitoring", events),
            "cache": facade_class("cache", events, init_error=ConnectionError("no cache")),
            "security": facade_class("security", events),
        },
        listener_factory=factory,
    )

    code = await asyncio.wait_for(bootstrap.run(), timeout=5.0)

    assert code == 1
    assert factory.calls == 0
    assert bootstrap.realtime is None
    assert len(bootstrap.init_errors) == 1
    assert isinstance(bootstrap.init_errors[0], ServiceInitError)
    assert bootstrap.init_errors[0].service == "cache"
    # Every facade was attempted concurrently, none was closed
    assert sorted(e for e in events if e.startswith("init:")) == [
        "init:cache", "init:monitoring", "init:security"
    ]
    assert not any(e.startswith("close:") for e in events)
    assert bootstrap.ctx.handles["monitoring"].state is ServiceState.READY
    assert bootstrap.ctx.handles["cache"].state is ServiceState.UNINITIALIZED


@pytest.mark.asyncio
async def test_services_ready_before_listener_starts(settings):
    events = []
    factory = ListenerFactory(events)
    bootstrap = WorkerBootstrap(
        settings,
        facades={
            "monitoring": facade_class("monitoring", events, init_delay=0.05),
            "cache": facade_class("cache", events),
        },
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: factory.listener is not None and factory.listener.started,
                                    timeout=5.0)

    assert events.index("listener:start") > events.index("init:monitoring")
    assert all(h.is_ready for h in bootstrap.ctx.handles.values())
    assert bootstrap.app is not None

    bootstrap.orchestrator.request_shutdown("test done")
    code = await asyncio.wait_for(run_task, timeout=5.0)

    assert code == 0
    assert all(h.state is ServiceState.CLOSED for h in bootstrap.ctx.handles.values())
    assert events.index("listener:stop_accepting") < events.index("close:cache")


@pytest.mark.asyncio
async def test_monitoring_facade_wired_into_orchestrator(settings):
    factory = ListenerFactory([])
    bootstrap = WorkerBootstrap(
        settings,
        facades={"monitoring": FakeMonitoring},
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: factory.calls == 1, timeout=5.0)

    assert bootstrap.orchestrator.monitoring is bootstrap.ctx.monitoring
    bootstrap.orchestrator.request_shutdown()
    assert await asyncio.wait_for(run_task, timeout=5.0) == 0


@pytest.mark.asyncio
async def test_realtime_child_started_after_listener_and_stopped_on_drain(settings):
    events = []
    settings.realtime_command = [sys.executable, "-c", "import time; time.sleep(30)"]
    factory = ListenerFactory(events)
    bootstrap = WorkerBootstrap(
        settings,
        facades={"cache": facade_class("cache", events)},
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: bootstrap.realtime is not None and bootstrap.realtime.is_running,
                                    timeout=5.0)
    assert factory.listener.started

    child = bootstrap.realtime.handle
    bootstrap.orchestrator.request_shutdown()
    code = await asyncio.wait_for(run_task, timeout=10.0)

    assert code == 0
    assert child.exit_code is not None
    assert len(bootstrap.realtime.handles) == 1


@pytest.mark.asyncio
async def test_realtime_disabled_for_non_primary_worker(settings):
    settings.realtime_command = [sys.executable, "-c", "pass"]
    factory = ListenerFactory([])
    bootstrap = WorkerBootstrap(
        settings,
        slot=2,
        run_realtime=False,
        facades={"cache": facade_class("cache")},
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: factory.calls == 1, timeout=5.0)
    await asyncio.sleep(0.05)

    assert bootstrap.realtime is None
    bootstrap.orchestrator.request_shutdown()
    assert await asyncio.wait_for(run_task, timeout=5.0) == 0


@pytest.mark.asyncio
async def test_trigger_during_hanging_init_exits_one_at_deadline(settings):
    events = []
    settings.shutdown_timeout = 0.5
    settings.realtime_command = [sys.executable, "-c", "import time; time.sleep(30)"]
    factory = ListenerFactory(events)
    bootstrap = WorkerBootstrap(
        settings,
        facades={
            "monitoring": facade_class("monitoring", events),
            "cache": facade_class("cache", events, init_delay=3600),
        },
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: "init:cache" in events, timeout=5.0)
    bootstrap.orchestrator.trigger(ShutdownReason.SIGNAL, "SIGTERM")

    code = await asyncio.wait_for(run_task, timeout=3.0)
    bootstrap.startup_task.cancel()

    assert code == 1
    assert bootstrap.orchestrator.session.reason is ShutdownReason.SIGNAL
    assert factory.calls == 0
    assert bootstrap.realtime is None


@pytest.mark.asyncio
async def test_trigger_during_init_closes_services_without_serving(settings):
    events = []
    settings.realtime_command = [sys.executable, "-c", "import time; time.sleep(30)"]
    factory = ListenerFactory(events)
    bootstrap = WorkerBootstrap(
        settings,
        facades={
            "monitoring": facade_class("monitoring", events),
            "cache": facade_class("cache", events, init_delay=0.3),
        },
        listener_factory=factory,
    )

    run_task = asyncio.create_task(bootstrap.run())
    assert await wait_for_condition(lambda: "init:cache" in events, timeout=5.0)
    bootstrap.orchestrator.request_shutdown("early")

    code = await asyncio.wait_for(run_task, timeout=5.0)

    assert code == 0
    assert factory.calls == 0
    assert bootstrap.realtime is None
    # cache became ready after the trigger and was still closed
    assert "close:cache" in events
    assert all(h.state is ServiceState.CLOSED for h in bootstrap.ctx.handles.values())
