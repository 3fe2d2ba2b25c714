"""worker_main in a real forked process: exit codes seen by the parent.

SIGTERM goes to the child once its facades are ready; the exit code is
whatever os._exit received from the shutdown orchestrator.
"""

import multiprocessing as mp
import os
import signal
import time
from pathlib import Path

import pytest

from higgs_server.config import ServerSettings
from higgs_server.management.worker_bootstrap import worker_main
from tests.helpers.fakes import FakeListener, facade_class
from tests.helpers.wait_helpers import poll_until

pytestmark = pytest.mark.slow


def marked_facade(ready_file: str, **behaviour):
    """Cache facade that touches ready_file once initialized."""

    class Marked(facade_class("cache", **behaviour)):
        async def initialize(self):
            await super().initialize()
            Path(ready_file).touch()

    return Marked


def facade_worker(ready_file, settings, **behaviour):
    worker_main(
        settings,
        run_realtime=False,
        facades={"cache": marked_facade(ready_file, **behaviour)},
        listener_factory=lambda app, ctx, sock: FakeListener(),
    )


@pytest.fixture
def settings():
    return ServerSettings(env="development", host="127.0.0.1", port=0,
                          shutdown_timeout=0.5, realtime_command=None)


def start_worker(tmp_path, settings, **behaviour) -> mp.process.BaseProcess:
    ready = tmp_path / "ready"
    process = mp.get_context("fork").Process(
        target=facade_worker, args=(str(ready), settings), kwargs=behaviour
    )
    process.start()
    assert poll_until(ready.exists, lambda: time.sleep(0.05), timeout=10.0)
    return process


def stop_worker(process: mp.process.BaseProcess, timeout: float = 5.0) -> int | None:
    os.kill(process.pid, signal.SIGTERM)
    process.join(timeout=timeout)
    if process.is_alive():
        process.kill()
        process.join()
        return None
    return process.exitcode


def test_clean_shutdown_exits_zero(tmp_path, settings):
    process = start_worker(tmp_path, settings)
    assert stop_worker(process) == 0


def test_hanging_close_exits_one_at_deadline(tmp_path, settings):
    process = start_worker(tmp_path, settings, hang_on_close=True)

    start = time.monotonic()
    code = stop_worker(process)

    assert code == 1
    assert time.monotonic() - start < 3.0


def test_failing_close_still_exits_zero(tmp_path, settings):
    process = start_worker(tmp_path, settings, close_error=RuntimeError("flush failed"))
    assert stop_worker(process) == 0
