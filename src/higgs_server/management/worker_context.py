"""WorkerContext: explicit per-worker owner of shared resources."""
from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Any

from serverish.messenger import Messenger

from higgs_server.base_service import ServiceHandle, ServiceState

if TYPE_CHECKING:
    from higgs_server.config import ServerSettings
    from higgs_server.services.monitoring import MonitoringFacade


class WorkerContext:
    """Resources owned by one worker process.

    Constructed by the worker bootstrap and handed to the HTTP application
    and to facades explicitly; nothing here is a process-wide global.

    Manages:
    - Settings and worker slot
    - Service handles (the only writer is the bootstrap / shutdown orchestrator)
    - NATS Messenger (opened and closed by this context when configured)
    """

    def __init__(self, settings: ServerSettings, slot: int = 0):
        self.settings = settings
        self.slot = slot
        self.pid = os.getpid()
        self.started_at = time.time()
        self.handles: dict[str, ServiceHandle] = {}
        self.logger = logging.getLogger(f"ctx|{slot}")
        self._messenger: Messenger | None = None
        self._owns_messenger = False

    @property
    def messenger(self) -> Messenger | None:
        """Open NATS messenger, or None when NATS is not in use."""
        if self._messenger is not None and self._messenger.is_open:
            return self._messenger
        return None

    @property
    def monitoring(self) -> MonitoringFacade | None:
        handle = self.handles.get("monitoring")
        return handle.facade if handle else None

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    def add_handle(self, handle: ServiceHandle):
        self.handles[handle.name] = handle
        self.logger.debug(f"Registered service handle: {handle.name}")

    def service_states(self) -> dict[str, ServiceState]:
        return {name: handle.state for name, handle in self.handles.items()}

    def all_ready(self) -> bool:
        return bool(self.handles) and all(h.is_ready for h in self.handles.values())

    async def open_messenger(self, nats_config: dict[str, Any] | None = None):
        """Open the NATS messenger if a nats section is configured.

        If 'required' is True (default when configured in the file) a
        connection failure is raised; otherwise a short timeout is used and
        the worker continues without NATS.

        Args:
            nats_config: NATS section; defaults to settings.nats
        """
        if nats_config is None:
            nats_config = self.settings.nats
        if not nats_config:
            self.logger.debug("No NATS configuration, messaging disabled")
            return

        host = nats_config.get("host", "localhost")
        port_raw = nats_config.get("port", 4222)
        required = str(nats_config.get("required", True)).lower() in ("1", "true", "yes")

        try:
            port = int(port_raw)
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Invalid NATS port configuration: '{port_raw}' cannot be converted to integer"
            ) from e

        timeout = None if required else 2.0
        messenger = Messenger()
        if messenger.is_open:
            self._messenger = messenger
            self._owns_messenger = False
            self.logger.info("Using already open Messenger (not owned)")
            return

        try:
            await messenger.open(host=host, port=port, timeout=timeout)
        except Exception as e:
            if required:
                self.logger.error(f"NATS is required but connection failed: {e}")
                raise
            self.logger.warning(
                f"Could not connect to NATS ({host}:{port}): {e}. Continuing without NATS."
            )
            return

        self._messenger = messenger
        self._owns_messenger = True
        self.logger.info(f"Messenger opened, connected to {host}:{port}")

    async def close_messenger(self):
        """Close the messenger if this context opened it."""
        if self._messenger is None:
            return
        if self._owns_messenger and self._messenger.is_open:
            try:
                await self._messenger.close()
                self.logger.info("Closed owned NATS messenger")
            except Exception as e:
                self.logger.error(f"Failed to close NATS messenger: {e}")
        self._messenger = None
