"""Per-process worker startup: facades, HTTP listener, realtime child, shutdown.

Startup order is strict:
    1. every facade initializes concurrently; any failure -> exit code 1,
       no listener and no realtime child
    2. HTTP listener starts accepting
    3. realtime child supervisor starts (if this worker runs it)
    4. the ShutdownOrchestrator waits for a trigger and drains

Triggers are consumed from the start. One that arrives during step 1
skips steps 2 and 3; startup still in progress is bounded by the same
shutdown deadline.
"""

import asyncio
import logging
import os
import socket
from collections.abc import Callable

from fastapi import APIRouter, FastAPI

from higgs_server.base_service import (
    FACADE_NAMES,
    BaseServiceFacade,
    ServiceHandle,
    ServiceState,
    get_facade_class,
)
from higgs_server.config import ServerSettings
from higgs_server.errors import ServiceInitError, ShutdownTimeout
from higgs_server.launchers.realtime import RealtimeChildSupervisor
from higgs_server.management.shutdown import ShutdownOrchestrator
from higgs_server.management.worker_context import WorkerContext
from higgs_server.web.app import create_app
from higgs_server.web.listener import HttpListener


def default_facades() -> dict[str, type[BaseServiceFacade]]:
    """Facade classes of the built-in subsystems, in registration order."""
    import higgs_server.services  # noqa: F401  (registers the facades)

    facades = {}
    for name in FACADE_NAMES:
        cls = get_facade_class(name)
        if cls is None:
            raise RuntimeError(f"No facade registered for '{name}'")
        facades[name] = cls
    return facades


class WorkerBootstrap:
    """Brings up one worker and runs it until its shutdown completes.

    Args:
        settings: Resolved server settings
        slot: Worker slot (0 in standalone mode)
        sock: Listening socket inherited from the supervisor, or None to bind
        run_realtime: Whether this worker supervises the realtime child
        facades: name -> facade class; defaults to the built-in five
        listener_factory: Callable(app, ctx, sock) returning the listener
        api_router: API collaborator mounted under /api/v1
    """

    def __init__(
        self,
        settings: ServerSettings,
        slot: int = 0,
        sock: socket.socket | None = None,
        run_realtime: bool = True,
        facades: dict[str, type[BaseServiceFacade]] | None = None,
        listener_factory: Callable | None = None,
        api_router: APIRouter | None = None,
    ):
        self.settings = settings
        self.slot = slot
        self.sock = sock
        self.run_realtime = run_realtime
        self.facades = facades if facades is not None else default_facades()
        self.listener_factory = listener_factory or self._default_listener
        self.api_router = api_router
        self.ctx = WorkerContext(settings, slot)
        self.logger = logging.getLogger(f"wrk|{slot}")
        self.app: FastAPI | None = None
        self.listener = None
        self.realtime: RealtimeChildSupervisor | None = None
        self.orchestrator: ShutdownOrchestrator | None = None
        self.init_errors: list[BaseException] = []
        self.startup_task: asyncio.Task | None = None

    def _default_listener(self, app: FastAPI, ctx: WorkerContext, sock: socket.socket | None):
        log_level = "info" if not self.settings.is_production else "warning"
        return HttpListener(app, host=self.settings.host, port=self.settings.port,
                            sock=sock, log_level=log_level)

    def _create_handles(self):
        for name, cls in self.facades.items():
            if name not in self.ctx.handles:
                self.ctx.add_handle(ServiceHandle(cls(self.ctx), name=name))

    async def initialize_services(self) -> bool:
        """Initialize every facade concurrently.

        Returns:
            True if all handles reached READY
        """
        self._create_handles()
        handles = list(self.ctx.handles.values())
        self.logger.info(f"Initializing services: {', '.join(h.name for h in handles)}")
        results = await asyncio.gather(*(h.initialize() for h in handles), return_exceptions=True)

        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                error = result if isinstance(result, ServiceInitError) else ServiceInitError(handle.name, result)
                self.init_errors.append(error)
                self.logger.error(str(error))

        return not self.init_errors

    def _create_realtime(self) -> RealtimeChildSupervisor | None:
        if not self.run_realtime:
            return None
        if not self.settings.realtime_command:
            self.logger.info("No realtime command configured, realtime child disabled")
            return None
        return RealtimeChildSupervisor(
            self.settings.realtime_command,
            self.settings.realtime_port,
            restart_sec=self.settings.realtime_restart_sec,
            restart_max=self.settings.realtime_restart_max,
            restart_window=self.settings.restart_window,
            name=str(self.slot),
        )

    async def run(self) -> int:
        """Run the worker lifecycle and return the process exit code."""
        loop = asyncio.get_running_loop()

        self.orchestrator = ShutdownOrchestrator(
            self.ctx.handles.values(),
            timeout=self.settings.shutdown_timeout,
            name=str(self.slot),
        )
        self.orchestrator.install_signal_handlers(loop)
        self.orchestrator.install_exception_handler(loop)
        try:
            return await self._run()
        finally:
            self.orchestrator.stop()
            self.orchestrator.remove_signal_handlers(loop)
            loop.set_exception_handler(None)

    async def _start_services(self) -> bool:
        try:
            await self.ctx.open_messenger()
        except Exception as e:
            self.logger.error(f"Worker cannot start, messaging unavailable: {e}")
            return False

        if not await self.initialize_services():
            self.logger.error("Service initialization failed, worker exits without serving")
            await self.ctx.close_messenger()
            return False

        self.orchestrator.monitoring = self.ctx.monitoring
        return True

    async def _run(self) -> int:
        self._create_handles()
        self.orchestrator.handles = list(self.ctx.handles.values())
        # Triggers are consumed from here on, startup included
        self.orchestrator.start()

        self.startup_task = asyncio.create_task(self._start_services(), name="worker-startup")
        triggered = asyncio.create_task(self.orchestrator.wait_triggered(), name="startup-trigger")
        await asyncio.wait({self.startup_task, triggered}, return_when=asyncio.FIRST_COMPLETED)
        triggered.cancel()

        if self.orchestrator.session is not None:
            return await self._abort_startup()
        if not self.startup_task.result():
            return 1

        self.app = create_app(self.ctx, self.api_router)
        self.listener = self.listener_factory(self.app, self.ctx, self.sock)
        try:
            await self.listener.start()
        except Exception as e:
            self.logger.error(f"HTTP listener failed to start: {e}")
            return 1
        self.orchestrator.listener = self.listener

        if self.orchestrator.session is not None:
            # Triggered while the listener was starting
            self.listener.stop_accepting()
        else:
            self.realtime = self._create_realtime()
            if self.realtime is not None:
                try:
                    await self.realtime.start()
                except OSError as e:
                    self.logger.error(f"Realtime child could not be spawned: {e}")
                    if self.ctx.monitoring is not None:
                        self.ctx.monitoring.record_error(e, "REALTIME_SPAWN_FAILED")
                    self.realtime = None
            self.orchestrator.realtime = self.realtime
            self.logger.info(f"Worker {self.slot} running (PID: {os.getpid()})")

        return await self._finish()

    async def _abort_startup(self) -> int:
        """Shut down a worker that was triggered before it started serving.

        Neither the listener nor the realtime child is started. Startup still
        in progress gets until the session deadline; if it is not done by
        then the worker exits with code 1.
        """
        session = self.orchestrator.session
        self.logger.warning(f"Shutdown requested during startup ({session.reason}), worker will not serve")

        if not self.startup_task.done():
            remaining = max(0.0, session.deadline - asyncio.get_running_loop().time())
            await asyncio.wait({self.startup_task}, timeout=remaining)
        if not self.startup_task.done():
            pending = sorted(h.name for h in self.ctx.handles.values()
                             if h.state is ServiceState.UNINITIALIZED and h.last_error is None)
            self.logger.error(str(ShutdownTimeout(self.settings.shutdown_timeout, pending)))
            return 1
        if not self.startup_task.result():
            return 1

        self.orchestrator.adopt_ready()
        return await self._finish()

    async def _finish(self) -> int:
        code = await self.orchestrator.run()
        if code == 0:
            await self.ctx.close_messenger()
        return code


def run_worker(settings: ServerSettings, slot: int = 0, sock: socket.socket | None = None,
               run_realtime: bool = True, **kwargs) -> int:
    """Run a WorkerBootstrap in a fresh event loop and return its exit code.

    Unlike asyncio.run() the loop is not torn down: closes abandoned at the
    deadline are neither cancelled nor awaited. The caller is expected to
    end the process right after.
    """
    logger = logging.getLogger(f"wrk|{slot}")
    bootstrap = WorkerBootstrap(settings, slot=slot, sock=sock, run_realtime=run_realtime, **kwargs)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(bootstrap.run())
    except Exception as e:
        logger.error(f"Worker crashed: {e}", exc_info=True)
        return 1


def worker_main(settings: ServerSettings, slot: int = 0, sock: socket.socket | None = None,
                run_realtime: bool = True, **kwargs):
    """Process entry point of a worker. Never returns.

    Extra keyword arguments go to WorkerBootstrap (facades, listener_factory, ...).

    The process ends through os._exit so that pending closes abandoned at
    the deadline, or non-daemon threads, cannot keep it alive.
    """
    code = run_worker(settings, slot=slot, sock=sock, run_realtime=run_realtime, **kwargs)
    logging.getLogger(f"wrk|{slot}").info(f"Worker exiting with code {code}")
    for handler in logging.getLogger().handlers:
        handler.flush()
    os._exit(code)
