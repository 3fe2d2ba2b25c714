"""ShutdownOrchestrator tests.

Covers the drain sequence, the single-session rule, the deadline, and the
three trigger sources (signal, fatal error, deliberate request).
"""

import asyncio
import os
import signal
import time

import pytest

from higgs_server.base_service import ServiceHandle, ServiceState
from higgs_server.errors import ServiceCloseError
from higgs_server.management.shutdown import (
    OrchestratorState,
    ShutdownOrchestrator,
    ShutdownReason,
)
from tests.helpers.fakes import FakeFacade, FakeListener, FakeMonitoring


async def ready_handles(*facades) -> list[ServiceHandle]:
    handles = [ServiceHandle(facade) for facade in facades]
    for handle in handles:
        await handle.initialize()
    return handles


@pytest.mark.asyncio
async def test_signal_closes_all_ready_services_and_exits_zero():
    events = []
    handles = await ready_handles(
        *(FakeFacade(name=name, events=events) for name in ("monitoring", "cache", "security"))
    )
    listener = FakeListener(events)
    orchestrator = ShutdownOrchestrator(handles, listener, timeout=5.0)

    orchestrator.trigger(ShutdownReason.SIGNAL, "SIGTERM")
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    assert code == 0
    assert orchestrator.state is OrchestratorState.TERMINATED
    assert orchestrator.session.reason is ShutdownReason.SIGNAL
    assert orchestrator.session.detail == "SIGTERM"
    assert all(h.state is ServiceState.CLOSED for h in handles)
    assert "listener:drained" in events
    assert orchestrator.terminated.is_set()


@pytest.mark.asyncio
async def test_listener_stops_accepting_before_any_close_begins():
    events = []
    handles = await ready_handles(
        FakeFacade(name="cache", events=events),
        FakeFacade(name="analytics", events=events),
    )
    orchestrator = ShutdownOrchestrator(handles, FakeListener(events), timeout=5.0)

    orchestrator.request_shutdown()
    await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    stop_index = events.index("listener:stop_accepting")
    close_indices = [i for i, event in enumerate(events) if event.startswith("close:")]
    assert close_indices
    assert stop_index < min(close_indices)


@pytest.mark.asyncio
async def test_second_trigger_is_ignored():
    handles = await ready_handles(FakeFacade(name="cache", close_delay=0.05))
    orchestrator = ShutdownOrchestrator(handles, FakeListener(), timeout=5.0)

    orchestrator.trigger(ShutdownReason.SIGNAL, "SIGTERM")
    orchestrator.trigger(ShutdownReason.DELIBERATE, "again")
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    assert code == 0
    assert orchestrator.session.reason is ShutdownReason.SIGNAL
    assert orchestrator.ignored_triggers == [(ShutdownReason.DELIBERATE, "again")]
    assert handles[0].facade.close_calls == 1


@pytest.mark.asyncio
async def test_hanging_close_hits_deadline_with_exit_one():
    hanging = FakeFacade(name="analytics", hang_on_close=True)
    healthy = FakeFacade(name="cache")
    handles = await ready_handles(hanging, healthy)
    orchestrator = ShutdownOrchestrator(handles, FakeListener(), timeout=0.3)

    orchestrator.trigger(ShutdownReason.SIGNAL, "SIGTERM")
    start = time.monotonic()
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)
    elapsed = time.monotonic() - start

    assert code == 1
    assert elapsed < 2.0
    assert handles[0].state is ServiceState.CLOSING
    assert handles[1].state is ServiceState.CLOSED
    assert orchestrator.state is OrchestratorState.TERMINATED


@pytest.mark.asyncio
async def test_listener_that_never_drains_hits_deadline():
    handles = await ready_handles(FakeFacade(name="cache"))
    orchestrator = ShutdownOrchestrator(handles, FakeListener(hang_on_drain=True), timeout=0.2)

    orchestrator.request_shutdown()
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    assert code == 1
    assert handles[0].state is ServiceState.CLOSED


@pytest.mark.asyncio
async def test_only_ready_handles_are_awaited():
    """3 ready + 2 already closing: only the 3 are pending, exit code 0."""
    ready = await ready_handles(*(FakeFacade(name=f"ready{i}") for i in range(3)))
    closing = await ready_handles(
        *(FakeFacade(name=f"closing{i}", hang_on_close=True) for i in range(2))
    )
    for handle in closing:
        handle.begin_close()

    orchestrator = ShutdownOrchestrator(ready + closing, FakeListener(), timeout=2.0)
    orchestrator.trigger(ShutdownReason.SIGNAL, "SIGINT")
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    assert code == 0
    assert orchestrator.session.pending_services == set(ready)
    assert all(h.state is ServiceState.CLOSED for h in ready)
    assert all(h.state is ServiceState.CLOSING for h in closing)
    assert all(h.facade.close_calls == 0 for h in closing)


@pytest.mark.asyncio
async def test_close_error_does_not_block_siblings():
    failing = FakeFacade(name="notification", close_error=RuntimeError("smtp gone"))
    slow = FakeFacade(name="cache", close_delay=0.1)
    handles = await ready_handles(failing, slow)
    orchestrator = ShutdownOrchestrator(handles, FakeListener(), timeout=5.0)

    orchestrator.request_shutdown()
    code = await asyncio.wait_for(orchestrator.run(), timeout=5.0)

    assert code == 0
    assert isinstance(handles[0].last_error, ServiceCloseError)
    assert handles[1].facade.closed
    assert all(h.state is ServiceState.CLOSED for h in handles)


@pytest.mark.asyncio
async def test_fatal_error_drains_with_same_sequence():
    events = []
    monitoring = FakeMonitoring(events=events)
    handles = await ready_handles(monitoring, FakeFacade(name="cache", events=events))
    orchestrator = ShutdownOrchestrator(handles, FakeListener(events), timeout=5.0,
                                        monitoring=monitoring)
    loop = asyncio.get_running_loop()
    orchestrator.install_exception_handler(loop)
    try:
        run_task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0)
        error = RuntimeError("unexpected state")
        loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": error})
        code = await asyncio.wait_for(run_task, timeout=5.0)
    finally:
        loop.set_exception_handler(None)

    assert code == 0
    assert orchestrator.session.reason is ShutdownReason.FATAL_ERROR
    assert monitoring.errors == [(error, "UNCAUGHT_EXCEPTION")]
    assert events.index("listener:stop_accepting") < events.index("close:cache")
    assert all(h.state is ServiceState.CLOSED for h in handles)


@pytest.mark.asyncio
async def test_real_sigterm_triggers_signal_drain():
    handles = await ready_handles(FakeFacade(name="cache"))
    orchestrator = ShutdownOrchestrator(handles, FakeListener(), timeout=5.0)
    loop = asyncio.get_running_loop()
    orchestrator.install_signal_handlers(loop)
    try:
        run_task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0)
        os.kill(os.getpid(), signal.SIGTERM)
        code = await asyncio.wait_for(run_task, timeout=5.0)
    finally:
        orchestrator.remove_signal_handlers(loop)

    assert code == 0
    assert orchestrator.session.reason is ShutdownReason.SIGNAL
    assert orchestrator.session.detail == "SIGTERM"


@pytest.mark.asyncio
async def test_without_listener_or_services_terminates_immediately():
    orchestrator = ShutdownOrchestrator([], None, timeout=1.0)

    orchestrator.request_shutdown("test")
    code = await asyncio.wait_for(orchestrator.run(), timeout=2.0)

    assert code == 0
    assert orchestrator.session.pending_services == set()
