"""Supervision of the realtime transport child process.

The worker spawns the realtime server as a separate OS process bound to
REALTIME_PORT. A non-zero exit outside a worker-initiated stop is a crash:
after a fixed delay a fresh child is spawned with restart_count + 1.
A clean exit (code 0) is not restarted.
"""

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from time import time

from higgs_server.errors import ChildProcessCrash


class ChildState(Enum):
    RUNNING = "running"
    EXITED = "exited"

    def __str__(self) -> str:
        return self.value


@dataclass
class ChildProcessHandle:
    """One spawned realtime child. Replaced, not reused, on restart."""
    process: subprocess.Popen
    restart_count: int = 0
    last_restart_at: float | None = None
    start_time: datetime = field(default_factory=datetime.now)
    exit_code: int | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def state(self) -> ChildState:
        return ChildState.RUNNING if self.exit_code is None else ChildState.EXITED

    def record_exit(self, exit_code: int):
        if self.exit_code is None:
            self.exit_code = exit_code


class RealtimeChildSupervisor:
    """Keeps the realtime child alive for the lifetime of a worker.

    Args:
        command: argv of the realtime server
        port: Port exported to the child as PORT and REALTIME_PORT
        restart_sec: Fixed delay before respawning a crashed child
        restart_max: Max restarts within restart_window (0 = unlimited)
        restart_window: Time window for restart counting (seconds)
        terminate_delay: Grace between SIGTERM and SIGKILL in stop()
        name: Logger suffix, usually the worker slot
    """

    def __init__(
        self,
        command: list[str],
        port: int,
        restart_sec: float = 5.0,
        restart_max: int = 0,
        restart_window: float = 60.0,
        terminate_delay: float = 2.0,
        name: str = "0",
    ):
        self.command = list(command)
        self.port = port
        self.restart_sec = restart_sec
        self.restart_max = restart_max
        self.restart_window = restart_window
        self.terminate_delay = terminate_delay
        self.handle: ChildProcessHandle | None = None
        self.handles: list[ChildProcessHandle] = []
        self.crashes: list[ChildProcessCrash] = []
        self.failed = False
        self.logger = logging.getLogger(f"rtc|{name}")
        self._stopping = False
        self._restart_history: list[float] = []
        self._crash_monitor_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.handle is not None and self.handle.state is ChildState.RUNNING

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PORT"] = str(self.port)
        env["REALTIME_PORT"] = str(self.port)
        return env

    def _spawn(self, restart_count: int = 0) -> ChildProcessHandle:
        process = subprocess.Popen(self.command, env=self._child_env())
        handle = ChildProcessHandle(
            process=process,
            restart_count=restart_count,
            last_restart_at=time() if restart_count else None,
        )
        self.handle = handle
        self.handles.append(handle)
        self._crash_monitor_task = asyncio.create_task(self._monitor_crash(handle))
        self.logger.info(
            f"Realtime child started on port {self.port} (PID: {handle.pid}, restarts: {restart_count})"
        )
        return handle

    async def start(self) -> ChildProcessHandle:
        """Spawn the first child.

        Raises:
            OSError: If the command cannot be executed
        """
        self._stopping = False
        self.logger.info(f"Starting realtime child: {' '.join(self.command)}")
        return self._spawn(restart_count=0)

    def _cleanup_restart_history(self):
        cutoff = time() - self.restart_window
        self._restart_history = [ts for ts in self._restart_history if ts > cutoff]

    async def _monitor_crash(self, handle: ChildProcessHandle):
        """Wait for the child to exit and respawn it after a crash."""
        returncode = await asyncio.to_thread(handle.process.wait)
        handle.record_exit(returncode)

        if self._stopping:
            self.logger.info(f"Realtime child exited during stop (exit code: {returncode})")
            return

        if returncode == 0:
            self.logger.info("Realtime child exited cleanly (exit code: 0), not restarting")
            return

        crash = ChildProcessCrash(handle.pid, returncode)
        self.crashes.append(crash)
        self.logger.warning(str(crash))

        if self.restart_max > 0:
            self._cleanup_restart_history()
            if len(self._restart_history) >= self.restart_max:
                self.logger.error(
                    f"Realtime child reached restart limit "
                    f"({self.restart_max} restarts in {self.restart_window}s), giving up"
                )
                self.failed = True
                return

        await asyncio.sleep(self.restart_sec)
        if self._stopping:
            return

        self.logger.info(f"Restarting realtime child (attempt {handle.restart_count + 1})")
        try:
            self._spawn(restart_count=handle.restart_count + 1)
        except OSError as e:
            self.logger.error(f"Failed to restart realtime child, giving up: {e}")
            self.failed = True
            return
        self._restart_history.append(time())

    async def stop(self):
        """Stop restarting and terminate the child (SIGTERM, bounded grace, SIGKILL)."""
        self._stopping = True

        if self._crash_monitor_task and not self._crash_monitor_task.done():
            self._crash_monitor_task.cancel()
            try:
                await self._crash_monitor_task
            except asyncio.CancelledError:
                pass
        self._crash_monitor_task = None

        handle = self.handle
        if handle is None:
            return
        proc = handle.process
        if proc.poll() is not None:
            handle.record_exit(proc.returncode)
            return

        self.logger.info(f"Stopping realtime child (PID: {handle.pid})")
        proc.terminate()

        poll_interval = 0.1
        max_polls = max(1, int(self.terminate_delay / poll_interval))
        for _ in range(max_polls):
            await asyncio.sleep(poll_interval)
            if proc.poll() is not None:
                break
        else:
            if proc.poll() is None:
                self.logger.warning(
                    f"Force killing realtime child - did not terminate in {self.terminate_delay}s"
                )
                proc.kill()
                await asyncio.to_thread(proc.wait)

        handle.record_exit(proc.returncode)
        self.logger.info(f"Realtime child stopped (exit code: {proc.returncode})")
