"""In-process uvicorn listener controlled by the worker, not by uvicorn's signals."""

import asyncio
import contextlib
import logging
import socket
import time

import uvicorn
from fastapi import FastAPI


class _WorkerServer(uvicorn.Server):
    """uvicorn.Server with its own signal handling disabled.

    SIGTERM/SIGINT belong to the ShutdownOrchestrator of the worker.
    """

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HttpListener:
    """Serves the FastAPI application of one worker.

    Args:
        app: ASGI application
        host: Bind address, used when no pre-bound socket is given
        port: Bind port, used when no pre-bound socket is given
        sock: Socket bound by the supervisor and inherited over fork
        log_level: uvicorn log level
    """

    def __init__(
        self,
        app: FastAPI,
        host: str = "0.0.0.0",
        port: int = 3000,
        sock: socket.socket | None = None,
        log_level: str = "warning",
    ):
        self.sock = sock
        self.logger = logging.getLogger("web")
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level=log_level,
            access_log=False,
            lifespan="off",
            workers=1,
        )
        self.server = _WorkerServer(config)
        self._serve_task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self.server.started

    async def start(self, ready_timeout: float = 10.0):
        """Start serving in a background task and wait until it accepts."""
        sockets = [self.sock] if self.sock is not None else None
        self._serve_task = asyncio.create_task(self.server.serve(sockets=sockets), name="http-listener")

        start_wait = time.monotonic()
        while not self.server.started:
            if self._serve_task.done():
                exc = self._serve_task.exception()
                if exc:
                    raise exc
                raise RuntimeError("HTTP listener stopped before it started")
            if time.monotonic() - start_wait > ready_timeout:
                raise TimeoutError(f"HTTP listener did not start within {ready_timeout}s")
            await asyncio.sleep(0.05)

        where = f"fd {self.sock.fileno()}" if self.sock is not None else (
            f"{self.server.config.host}:{self.server.config.port}")
        self.logger.info(f"HTTP listener accepting on {where}")

    def stop_accepting(self):
        """Close listening sockets now; in-flight requests may still complete."""
        for server in getattr(self.server, "servers", []):
            server.close()
        self.server.should_exit = True
        self.logger.info("HTTP listener stopped accepting new connections")

    async def wait_drained(self):
        """Return when uvicorn has finished the in-flight requests."""
        if self._serve_task is None:
            return
        await asyncio.shield(self._serve_task)
        self.logger.info("HTTP listener drained")
