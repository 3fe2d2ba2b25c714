"""Worker shutdown orchestration.

State machine RUNNING -> DRAINING -> TERMINATED. Every trigger (signal,
fatal error, deliberate request) is a message on one queue; a single
control-plane task feeds them to the transition function, so only the
first trigger opens a ShutdownSession.

Drain sequence:
    1. listener stops accepting new connections
    2. deadline starts
    3. close() fans out to every handle that was READY, realtime child is stopped
    4. exit code 0 when the listener drained and every pending handle closed,
       exit code 1 if the deadline fires first (pending closes are left running)
"""

import asyncio
import logging
import signal
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from higgs_server.base_service import ServiceHandle, ServiceState
from higgs_server.errors import FatalProcessError, ShutdownTimeout


class OrchestratorState(Enum):
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"

    def __str__(self) -> str:
        return self.value


class ShutdownReason(Enum):
    SIGNAL = "signal"
    FATAL_ERROR = "fatal_error"
    DELIBERATE = "deliberate"

    def __str__(self) -> str:
        return self.value


class Listener(Protocol):
    def stop_accepting(self) -> None: ...

    async def wait_drained(self) -> None: ...


@dataclass(eq=False)
class ShutdownSession:
    """The single drain of a worker.

    Attributes:
        reason: What triggered the drain
        deadline: Absolute loop.time() at which the worker gives up
        pending_services: Handles that were READY when the drain began
        detail: Free-form trigger description (signal name, error message)
    """
    reason: ShutdownReason
    deadline: float
    pending_services: set[ServiceHandle] = field(default_factory=set)
    detail: str | None = None


class ShutdownOrchestrator:
    """Coordinates listener drain, concurrent service close and the deadline.

    Args:
        handles: Service handles owned by the worker
        listener: Object with stop_accepting() and async wait_drained()
        realtime: Optional realtime child supervisor (async stop())
        timeout: Drain deadline in seconds
        monitoring: Optional monitoring facade receiving UNCAUGHT_EXCEPTION records
        name: Logger suffix, usually the worker slot
    """

    def __init__(
        self,
        handles: Iterable[ServiceHandle],
        listener: Listener | None = None,
        realtime=None,
        timeout: float = 30.0,
        monitoring=None,
        name: str = "0",
    ):
        self.handles = list(handles)
        self.listener = listener
        self.realtime = realtime
        self.timeout = timeout
        self.monitoring = monitoring
        self.state = OrchestratorState.RUNNING
        self.session: ShutdownSession | None = None
        self.exit_code: int | None = None
        self.ignored_triggers: list[tuple[ShutdownReason, str | None]] = []
        self.logger = logging.getLogger(f"shd|{name}")
        self._triggers: asyncio.Queue[tuple[ShutdownReason, str | None]] = asyncio.Queue()
        self._session_started = asyncio.Event()
        self._consumer: asyncio.Task | None = None
        self.terminated = asyncio.Event()

    # ── Trigger sources ───────────────────────────────────
    def trigger(self, reason: ShutdownReason, detail: str | None = None):
        """Enqueue a shutdown trigger. Safe to call from loop callbacks."""
        self._triggers.put_nowait((reason, detail))

    def request_shutdown(self, detail: str | None = "requested"):
        self.trigger(ShutdownReason.DELIBERATE, detail)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None):
        """Route SIGTERM and SIGINT into the trigger queue."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.trigger, ShutdownReason.SIGNAL, sig.name)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None):
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def install_exception_handler(self, loop: asyncio.AbstractEventLoop | None = None):
        """Turn unhandled asynchronous errors into a fatal_error drain."""
        loop = loop or asyncio.get_running_loop()
        loop.set_exception_handler(self.handle_loop_exception)

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]):
        cause = context.get("exception")
        error = FatalProcessError(cause, context.get("message") if cause is None else None)
        self.logger.error(f"Uncaught error in worker: {error}", exc_info=cause)
        self.report_fatal(cause if cause is not None else error)
        self.trigger(ShutdownReason.FATAL_ERROR, str(error))

    def report_fatal(self, error: BaseException):
        if self.monitoring is None:
            return
        try:
            self.monitoring.record_error(error, "UNCAUGHT_EXCEPTION")
        except Exception as e:
            self.logger.error(f"Failed to record fatal error in monitoring: {e}")

    # ── State machine ─────────────────────────────────────
    def _on_trigger(self, reason: ShutdownReason, detail: str | None):
        """The single transition function of the orchestrator."""
        if self.state is not OrchestratorState.RUNNING:
            self.ignored_triggers.append((reason, detail))
            self.logger.info(f"Already {self.state}, ignoring {reason} trigger ({detail})")
            return

        self.state = OrchestratorState.DRAINING
        self.logger.info(f"Shutdown triggered by {reason} ({detail}), draining")

        if self.listener is not None:
            self.listener.stop_accepting()

        deadline = asyncio.get_running_loop().time() + self.timeout
        pending = {h for h in self.handles if h.state is ServiceState.READY}
        skipped = [h.name for h in self.handles if h.state is ServiceState.CLOSING]
        if skipped:
            self.logger.info(f"Not awaiting services already closing: {', '.join(skipped)}")

        self.session = ShutdownSession(
            reason=reason,
            deadline=deadline,
            pending_services=pending,
            detail=detail,
        )
        self._session_started.set()

    def adopt_ready(self):
        """Add handles that became READY after the drain began to the session."""
        if self.session is None:
            return
        for handle in self.handles:
            if handle.state is ServiceState.READY:
                self.session.pending_services.add(handle)

    async def _consume_triggers(self):
        while True:
            reason, detail = await self._triggers.get()
            self._on_trigger(reason, detail)

    def start(self):
        """Start consuming triggers. run() does this itself if nobody did earlier."""
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume_triggers(), name="shutdown-triggers")

    def stop(self):
        """Stop consuming triggers."""
        if self._consumer is not None:
            self._consumer.cancel()

    async def wait_triggered(self):
        """Return once the first trigger has opened the shutdown session."""
        await self._session_started.wait()

    async def run(self) -> int:
        """Wait for the first trigger, drain, and return the exit code."""
        self.start()
        try:
            await self._session_started.wait()
            self.exit_code = await self._drain(self.session)
        finally:
            self.stop()
        self.state = OrchestratorState.TERMINATED
        self.terminated.set()
        return self.exit_code

    async def _drain(self, session: ShutdownSession) -> int:
        loop = asyncio.get_running_loop()
        close_tasks = {
            asyncio.create_task(handle.close(), name=f"close-{handle.name}"): handle
            for handle in session.pending_services
        }
        waited: set[asyncio.Task] = set(close_tasks)

        drain_task = None
        if self.listener is not None:
            drain_task = asyncio.create_task(self.listener.wait_drained(), name="listener-drain")
            waited.add(drain_task)

        realtime_task = None
        if self.realtime is not None:
            realtime_task = asyncio.create_task(self.realtime.stop(), name="realtime-stop")
            waited.add(realtime_task)

        if waited:
            remaining = max(0.0, session.deadline - loop.time())
            done, not_done = await asyncio.wait(waited, timeout=remaining)
        else:
            done, not_done = set(), set()

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                self.logger.error(f"{task.get_name()} failed: {exc}")

        for handle in session.pending_services:
            if handle.last_error is not None and handle.state is ServiceState.CLOSED:
                self.logger.warning(f"Service '{handle.name}' closed with error: {handle.last_error}")

        if not_done:
            pending = sorted(close_tasks[t].name for t in not_done if t in close_tasks)
            if drain_task in not_done:
                pending.append("listener")
            if realtime_task in not_done:
                pending.append("realtime")
            self.logger.error(str(ShutdownTimeout(self.timeout, pending)))
            return 1

        self.logger.info(f"Shutdown complete ({session.reason})")
        return 0
