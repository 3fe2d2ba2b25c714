"""Security facade: request admission policy.

Sliding-window rate limit per client key plus an explicit block list.
Window and limit come from ServerSettings (rate_limit_window /
rate_limit_max): 15 minutes, 1000 requests in production, 10000 otherwise.
Idle clients are pruned every prune_interval seconds while the facade is up.
"""

import asyncio
import time
from collections import deque

from higgs_server.base_service import BaseServiceFacade, facade

# Paths that are never rate limited
EXEMPT_PATHS = frozenset({"/health", "/metrics"})


@facade("security")
class SecurityFacade(BaseServiceFacade):

    def __init__(self, ctx=None, window: float | None = None, max_requests: int | None = None,
                 prune_interval: float = 60.0):
        super().__init__(ctx)
        settings = ctx.settings if ctx is not None else None
        self.window = window if window is not None else (settings.rate_limit_window if settings else 900.0)
        self.max_requests = (
            max_requests if max_requests is not None
            else (settings.rate_limit_max if settings else 10000)
        )
        self._hits: dict[str, deque[float]] = {}
        self.blocked: set[str] = set()
        self.rejected = 0
        self.prune_interval = prune_interval
        self._prune_task: asyncio.Task | None = None

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    async def initialize(self):
        self._hits.clear()
        self._prune_task = asyncio.create_task(self._prune_loop())
        self.svc_logger.info(
            f"Admission policy: {self.max_requests} requests per {self.window:.0f}s per client"
        )

    async def close(self):
        if self._prune_task:
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
            self._prune_task = None
        self._hits.clear()

    @staticmethod
    def is_exempt(path: str) -> bool:
        return path in EXEMPT_PATHS

    def admit(self, client_key: str) -> bool:
        """Record a request from client_key and tell whether it may proceed."""
        if client_key in self.blocked:
            self.rejected += 1
            return False

        now = time.monotonic()
        hits = self._hits.setdefault(client_key, deque())
        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.max_requests:
            self.rejected += 1
            return False
        hits.append(now)
        return True

    def retry_after(self, client_key: str) -> int:
        """Seconds until client_key gets a free slot in its window."""
        hits = self._hits.get(client_key)
        if not hits:
            return 0
        remaining = hits[0] + self.window - time.monotonic()
        return max(1, int(remaining + 0.999))

    def block(self, client_key: str):
        self.blocked.add(client_key)
        self.svc_logger.warning(f"Client blocked: {client_key}")

    def unblock(self, client_key: str):
        self.blocked.discard(client_key)

    def prune(self) -> int:
        """Forget clients with no requests inside the current window."""
        cutoff = time.monotonic() - self.window
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
        return len(idle)

    async def _prune_loop(self):
        while True:
            await asyncio.sleep(self.prune_interval)
            forgotten = self.prune()
            if forgotten:
                self.svc_logger.debug(f"Pruned {forgotten} idle clients")
