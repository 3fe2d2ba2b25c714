"""Notification facade: fan-out of notifications over NATS."""

from collections import deque
from typing import Any

from serverish.messenger import get_publisher

from higgs_server.base_service import BaseServiceFacade, facade


@facade("notification")
class NotificationFacade(BaseServiceFacade):
    """Publishes to ``<prefix>.notify.<channel>``; keeps them in memory without NATS."""

    def __init__(self, ctx=None, max_pending: int = 1000):
        super().__init__(ctx)
        self.pending: deque[tuple[str, dict[str, Any]]] = deque(maxlen=max_pending)
        self.sent = 0
        self._publishers: dict[str, Any] = {}

    def subject_for(self, channel: str) -> str:
        prefix = self.ctx.settings.subject_prefix if self.ctx else "svc"
        return f"{prefix}.notify.{channel}"

    async def initialize(self):
        mode = "nats" if self.messenger is not None else "memory"
        self.svc_logger.info(f"Notifications ready ({mode})")

    async def close(self):
        if self.pending:
            self.svc_logger.warning(f"Dropping {len(self.pending)} undelivered notifications")
        self.pending.clear()
        self._publishers.clear()

    async def notify(self, channel: str, payload: dict[str, Any]) -> bool:
        """Deliver payload on channel.

        Returns:
            True if published to NATS, False if only queued locally
        """
        if self.messenger is None:
            self.pending.append((channel, payload))
            self.svc_logger.info(f"Notification queued on '{channel}' (no NATS)")
            return False

        publisher = self._publishers.get(channel)
        if publisher is None:
            publisher = get_publisher(self.subject_for(channel))
            self._publishers[channel] = publisher
        await publisher.publish(data=payload)
        self.sent += 1
        return True
