"""Master process: keeps N forked workers alive and relays shutdown signals.

The supervisor does not run an event loop. It binds the HTTP socket once,
forks the workers (which inherit the socket), and then blocks in
multiprocessing.connection.wait() on the worker sentinels:

- a worker exits while running -> a replacement is forked into the same slot
  (after worker_restart_sec, subject to worker_restart_max in restart_window)
- SIGTERM/SIGINT -> the signal is forwarded to every live worker, replacement
  stops, workers get supervisor_stop_timeout to exit, stragglers are killed
"""

import contextlib
import logging
import multiprocessing as mp
import os
import signal
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing import connection

from higgs_server.config import ServerSettings
from higgs_server.management.worker_bootstrap import worker_main


class WorkerState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"

    def __str__(self) -> str:
        return self.value


@dataclass(eq=False)
class WorkerProcess:
    """Supervisor record of one forked worker."""
    slot: int
    process: mp.process.BaseProcess
    pid: int | None = None
    state: WorkerState = WorkerState.STARTING
    exit_code: int | None = None
    exit_signal: int | None = None
    started_at: float = field(default_factory=time.time)

    def record_exit(self):
        code = self.process.exitcode
        if code is not None and code < 0:
            self.exit_signal = -code
        self.exit_code = code
        self.state = WorkerState.EXITED

    def describe_exit(self) -> str:
        if self.exit_signal is not None:
            return f"signal {signal.Signals(self.exit_signal).name}"
        return f"code {self.exit_code}"


_SHUTDOWN_SIGNALS = {signal.SIGTERM, signal.SIGINT}


@contextlib.contextmanager
def _shutdown_signals_blocked():
    """Hold SIGTERM/SIGINT back in the master while a worker is forked."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, _SHUTDOWN_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


def _worker_entry(target, *args, **kwargs):
    """First code a forked worker runs.

    The child starts with the master's handlers and with the shutdown
    signals blocked; the handlers are reset before the signals are let through.
    """
    for sig in _SHUTDOWN_SIGNALS:
        signal.signal(sig, signal.SIG_DFL)
    signal.pthread_sigmask(signal.SIG_UNBLOCK, _SHUTDOWN_SIGNALS)
    target(*args, **kwargs)


def bind_listen_socket(host: str, port: int, backlog: int = 2048) -> socket.socket:
    """Bind the shared HTTP socket that forked workers inherit."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((host, port))
    sock.listen(backlog)
    sock.set_inheritable(True)
    return sock


class Supervisor:
    """Maintains exactly N live worker processes.

    Args:
        settings: Resolved server settings (workers, restart policy, stop timeout)
        worker_target: Callable(settings, slot, sock, run_realtime)
            run in each forked child
        mp_context: multiprocessing context (default: fork)
        bind_socket: Bind the HTTP socket before forking
        poll_interval: Max time between checks of the stop flag and pending restarts
    """

    def __init__(
        self,
        settings: ServerSettings,
        worker_target: Callable = worker_main,
        mp_context=None,
        bind_socket: bool = True,
        poll_interval: float = 0.5,
    ):
        self.settings = settings
        self.worker_target = worker_target
        self.mp_context = mp_context or mp.get_context("fork")
        self.bind_socket = bind_socket
        self.poll_interval = poll_interval
        self.logger = logging.getLogger("sup|master")
        self.sock: socket.socket | None = None
        self.workers: dict[int, WorkerProcess] = {}
        self.history: list[WorkerProcess] = []
        self.failed_slots: set[int] = set()
        self.stop_signal: int | None = None
        self._stopping = False
        self._pending_restarts: dict[int, float] = {}  # slot -> due (monotonic)
        self._restart_history: dict[int, list[float]] = {}
        self._previous_handlers: dict[int, object] = {}

    @property
    def stopping(self) -> bool:
        return self._stopping

    def running_count(self) -> int:
        return sum(
            1 for w in self.workers.values()
            if w.state is WorkerState.RUNNING and w.process.is_alive()
        )

    # ── Process management ────────────────────────────────
    def start(self, n: int | None = None):
        """Bind the listening socket and fork n workers into slots 0..n-1."""
        n = self.settings.workers if n is None else n
        if self.bind_socket and self.sock is None:
            self.sock = bind_listen_socket(self.settings.host, self.settings.port)
            self.logger.info(f"Listening on {self.settings.host}:{self.settings.port}")

        self.logger.info(f"Master {os.getpid()} starting {n} workers")
        for slot in range(n):
            if self._stopping:
                self.logger.info(f"Stopping, slots {slot}..{n - 1} not started")
                break
            self._spawn(slot)

    def _spawn(self, slot: int) -> WorkerProcess:
        process = self.mp_context.Process(
            target=_worker_entry,
            args=(self.worker_target, self.settings, slot, self.sock, slot == 0),
            name=f"higgs-worker-{slot}",
        )
        worker = WorkerProcess(slot=slot, process=process)
        self.workers[slot] = worker
        self.history.append(worker)
        # Signals wait until the pid is recorded
        with _shutdown_signals_blocked():
            process.start()
            worker.pid = process.pid
            worker.state = WorkerState.RUNNING
        self.logger.info(f"Worker {slot} started (PID: {worker.pid})")
        return worker

    def _on_worker_exit(self, worker: WorkerProcess):
        worker.process.join(timeout=0)
        worker.record_exit()
        if self._stopping:
            self.logger.info(f"Worker {worker.slot} (PID: {worker.pid}) exited with {worker.describe_exit()}")
            return

        self.logger.warning(
            f"Worker {worker.slot} (PID: {worker.pid}) died with {worker.describe_exit()}, replacing"
        )
        self._schedule_replacement(worker.slot)

    def _schedule_replacement(self, slot: int):
        limit = self.settings.worker_restart_max
        if limit > 0:
            cutoff = time.time() - self.settings.restart_window
            history = [ts for ts in self._restart_history.get(slot, []) if ts > cutoff]
            self._restart_history[slot] = history
            if len(history) >= limit:
                self.logger.error(
                    f"Worker {slot} reached restart limit "
                    f"({limit} restarts in {self.settings.restart_window}s), slot abandoned"
                )
                self.failed_slots.add(slot)
                return
        self._pending_restarts[slot] = time.monotonic() + self.settings.worker_restart_sec

    def _run_due_restarts(self):
        now = time.monotonic()
        for slot, due in list(self._pending_restarts.items()):
            if due <= now and not self._stopping:
                del self._pending_restarts[slot]
                self._restart_history.setdefault(slot, []).append(time.time())
                self._spawn(slot)

    def _live_sentinels(self) -> dict[int, WorkerProcess]:
        return {
            w.process.sentinel: w for w in self.workers.values()
            if w.state is not WorkerState.EXITED
        }

    def poll(self, timeout: float | None = None) -> int:
        """Wait up to timeout for worker exits, handle them, run due restarts.

        Returns:
            Number of worker exits handled
        """
        timeout = self.poll_interval if timeout is None else timeout
        if self._pending_restarts:
            next_due = min(self._pending_restarts.values()) - time.monotonic()
            timeout = max(0.0, min(timeout, next_due))

        sentinels = self._live_sentinels()
        if sentinels:
            ready = connection.wait(list(sentinels), timeout=timeout)
        else:
            time.sleep(timeout)
            ready = []

        for sentinel in ready:
            self._on_worker_exit(sentinels[sentinel])

        self._run_due_restarts()
        return len(ready)

    # ── Shutdown ──────────────────────────────────────────
    def stop(self, signum: int = signal.SIGTERM):
        """Stop replacing workers and forward signum to every live worker."""
        if self._stopping:
            self.logger.info(f"Already stopping, forwarding {signal.Signals(signum).name} again")
        else:
            self.logger.info(f"Received {signal.Signals(signum).name}, shutting down workers")
        self._stopping = True
        self.stop_signal = signum
        self._pending_restarts.clear()
        for worker in self.workers.values():
            if worker.state is WorkerState.EXITED or worker.pid is None:
                continue
            try:
                os.kill(worker.pid, signum)
            except ProcessLookupError:
                pass  # already gone, reaped by the next poll

    def _handle_signal(self, signum, frame):
        self.stop(signum)

    def install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Not in main thread, signal handlers not installed")
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def restore_signal_handlers(self):
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def wait_stopped(self, timeout: float | None = None) -> int:
        """Wait for workers to exit, kill stragglers.

        Returns:
            0 if every worker exited within the timeout, 1 otherwise
        """
        timeout = self.settings.supervisor_stop_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        while True:
            sentinels = self._live_sentinels()
            remaining = deadline - time.monotonic()
            if not sentinels or remaining <= 0:
                break
            for sentinel in connection.wait(list(sentinels), timeout=remaining):
                self._on_worker_exit(sentinels[sentinel])

        stragglers = list(self._live_sentinels().values())
        for worker in stragglers:
            self.logger.warning(f"Worker {worker.slot} (PID: {worker.pid}) did not exit in {timeout}s, killing")
            worker.process.kill()
            worker.process.join(timeout=1.0)
            worker.record_exit()

        if self.sock is not None:
            self.sock.close()
            self.sock = None

        if stragglers:
            return 1
        self.logger.info("All workers exited")
        return 0

    def run(self) -> int:
        """Blocking master loop. Returns the supervisor exit code."""
        self.install_signal_handlers()
        try:
            if not self.workers:
                self.start()
            while not self._stopping:
                self.poll()
                if not self._live_sentinels() and not self._pending_restarts:
                    self.logger.error("No workers left to supervise")
                    self._stopping = True
                    self.wait_stopped(0)
                    return 1
            return self.wait_stopped()
        finally:
            self.restore_signal_handlers()
