"""Service facade contract and the per-worker handles that track facade state."""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any

from higgs_server.errors import InvalidStateTransition, ServiceCloseError, ServiceInitError

if TYPE_CHECKING:
    from higgs_server.management.worker_context import WorkerContext


_log = logging.getLogger("svc.base")

# Names of the subsystems every worker brings up, in registration order
FACADE_NAMES = ("monitoring", "cache", "security", "analytics", "notification")

_facade_registry: dict[str, type["BaseServiceFacade"]] = {}


def facade(name: str):
    """Decorator to register a service facade class.

    Args:
        name: Subsystem name, one of FACADE_NAMES for the built-in facades.

    Example:
        @facade('cache')
        class CacheFacade(BaseServiceFacade):
            ...
    """
    if not isinstance(name, str) or not name:
        raise TypeError(
            f"@facade decorator requires a non-empty string name. "
            f"Usage: @facade('cache'). Got: {name!r}"
        )

    def decorator(cls: type["BaseServiceFacade"]) -> type["BaseServiceFacade"]:
        _facade_registry[name] = cls
        cls.name = name
        _log.debug(f"Registered facade '{name}' -> {cls.__name__}")
        return cls

    return decorator


def get_facade_class(name: str) -> type["BaseServiceFacade"] | None:
    """Get facade class by name from decorator registry."""
    return _facade_registry.get(name)


def list_registered_facades() -> dict[str, type["BaseServiceFacade"]]:
    """Get all registered facades."""
    return _facade_registry.copy()


class BaseServiceFacade(ABC):
    """Uniform lifecycle interface implemented by every subsystem.

    The worker calls initialize() once at startup and close() once, from the
    shutdown orchestrator only. Facades must not depend on each other while
    initializing.
    """
    name: str = ""  # Set by @facade

    def __init__(self, ctx: "WorkerContext | None" = None):
        self.ctx = ctx
        self.svc_logger = logging.getLogger(f"svc|{self.name or type(self).__name__}")

    @property
    def messenger(self):
        """Open NATS messenger of the owning worker, or None."""
        if self.ctx is None:
            return None
        return self.ctx.messenger

    @abstractmethod
    async def initialize(self) -> None:
        """Bring the subsystem up. Raise on failure."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the subsystem. Raise on failure."""
        pass


class ServiceState(Enum):
    """Lifecycle of a ServiceHandle. Transitions only move forward."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = [ServiceState.UNINITIALIZED, ServiceState.READY,
                ServiceState.CLOSING, ServiceState.CLOSED]

# Allowed edges; anything else (backward or skipping READY) is rejected
_ALLOWED = {
    ServiceState.UNINITIALIZED: {ServiceState.READY},
    ServiceState.READY: {ServiceState.CLOSING},
    ServiceState.CLOSING: {ServiceState.CLOSED},
    ServiceState.CLOSED: set(),
}


class ServiceHandle:
    """Worker-owned record of one facade's lifecycle.

    Attributes:
        name: Subsystem name
        facade: The wrapped BaseServiceFacade
        state: Current ServiceState
        last_error: Last ServiceInitError/ServiceCloseError, if any
        history: Every state the handle has been in, in order
    """

    def __init__(self, facade: BaseServiceFacade, name: str | None = None):
        self.name = name or facade.name
        self.facade = facade
        self.last_error: Exception | None = None
        self._state = ServiceState.UNINITIALIZED
        self.history: list[ServiceState] = [self._state]
        self.closed_event = asyncio.Event()
        self.logger = logging.getLogger(f"svc|{self.name}")

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ServiceState.READY

    def _transition(self, new_state: ServiceState):
        if new_state not in _ALLOWED[self._state]:
            raise InvalidStateTransition(
                f"Service '{self.name}' cannot move from {self._state} to {new_state}"
            )
        self.logger.debug(f"{self._state} -> {new_state}")
        self._state = new_state
        self.history.append(new_state)
        if new_state is ServiceState.CLOSED:
            self.closed_event.set()

    async def initialize(self):
        """Initialize the facade and mark the handle ready.

        Raises:
            ServiceInitError: wrapping whatever the facade raised
        """
        try:
            await self.facade.initialize()
        except ServiceInitError as e:
            self.last_error = e
            raise
        except Exception as e:
            self.last_error = ServiceInitError(self.name, e)
            raise self.last_error from e
        self._transition(ServiceState.READY)
        self.logger.info("Service ready")

    def begin_close(self):
        """Mark the handle closing (READY -> CLOSING)."""
        self._transition(ServiceState.CLOSING)

    async def close(self):
        """Close the facade. Failures are recorded, never raised."""
        self.begin_close()
        try:
            await self.facade.close()
            self.logger.info("Service closed")
        except Exception as e:
            self.last_error = ServiceCloseError(self.name, e)
            self.logger.error(f"Failed to close service: {e}")
        finally:
            self._transition(ServiceState.CLOSED)

    def to_dict(self) -> dict[str, Any]:
        data = {"name": self.name, "state": self._state.value}
        if self.last_error is not None:
            data["last_error"] = str(self.last_error)
        return data
