"""Analytics facade: buffered event tracking flushed in batches."""

import asyncio
from typing import Any

from serverish.base import dt_utcnow_array
from serverish.messenger import get_publisher

from higgs_server.base_service import BaseServiceFacade, facade


@facade("analytics")
class AnalyticsFacade(BaseServiceFacade):
    """Collects events and ships them as batches.

    Batches go to ``<prefix>.analytics.events`` when NATS is available,
    otherwise they are only logged. The buffer is flushed every
    flush_interval seconds, whenever it reaches batch_size, and on close().
    """

    def __init__(self, ctx=None, flush_interval: float = 10.0, batch_size: int = 100):
        super().__init__(ctx)
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.buffer: list[dict[str, Any]] = []
        self.batches_sent = 0
        self.events_sent = 0
        self._flush_task: asyncio.Task | None = None
        self._pending_flushes: set[asyncio.Task] = set()
        self._publisher = None

    @property
    def subject(self) -> str:
        prefix = self.ctx.settings.subject_prefix if self.ctx else "svc"
        return f"{prefix}.analytics.events"

    async def initialize(self):
        if self.messenger is not None:
            self._publisher = get_publisher(self.subject)
        self._flush_task = asyncio.create_task(self._flush_loop())
        target = self.subject if self._publisher else "log"
        self.svc_logger.info(f"Analytics ready, batches go to {target}")

    async def close(self):
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self._pending_flushes:
            await asyncio.gather(*self._pending_flushes)
        await self.flush()

    def track_event(self, name: str, properties: dict[str, Any] | None = None):
        event = {
            "event": name,
            "properties": properties or {},
            "timestamp": dt_utcnow_array(),
        }
        if self.ctx is not None:
            event["worker"] = self.ctx.slot
        self.buffer.append(event)
        if len(self.buffer) >= self.batch_size:
            try:
                task = asyncio.get_running_loop().create_task(self._safe_flush())
            except RuntimeError:
                return  # no loop yet, periodic flush picks it up
            self._pending_flushes.add(task)
            task.add_done_callback(self._pending_flushes.discard)

    async def flush(self) -> int:
        """Send everything buffered so far, return the number of events sent.

        A batch that fails to publish is put back in front of the buffer.
        """
        if not self.buffer:
            return 0
        batch, self.buffer = self.buffer, []
        if self._publisher is not None:
            try:
                await self._publisher.publish(data={"events": batch, "count": len(batch)})
            except Exception:
                self.buffer[:0] = batch
                raise
        else:
            self.svc_logger.debug(f"Analytics batch of {len(batch)} events (no NATS)")
        self.batches_sent += 1
        self.events_sent += len(batch)
        return len(batch)

    async def _safe_flush(self):
        try:
            await self.flush()
        except Exception as e:
            self.svc_logger.error(f"Analytics flush failed: {e}")

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            await self._safe_flush()
