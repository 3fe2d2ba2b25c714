"""Exception hierarchy for worker lifecycle failures.

Propagation rules:
- ServiceInitError aborts worker startup (exit code 1, no drain).
- ServiceCloseError is recorded on the handle and never propagates.
- ChildProcessCrash triggers the delayed realtime restart.
- FatalProcessError is converted into a drain, same path as a signal.
- ShutdownTimeout is only reported; the process exits with code 1.
"""


class HiggsError(Exception):
    """Base class for all server lifecycle errors."""


class ServiceInitError(HiggsError):
    """A service facade failed to initialize."""

    def __init__(self, service: str, cause: BaseException | None = None):
        self.service = service
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Service '{service}' failed to initialize{detail}")


class ServiceCloseError(HiggsError):
    """A service facade failed to close."""

    def __init__(self, service: str, cause: BaseException | None = None):
        self.service = service
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Service '{service}' failed to close{detail}")


class ChildProcessCrash(HiggsError):
    """The realtime child exited with a non-zero status."""

    def __init__(self, pid: int | None, exit_code: int | None):
        self.pid = pid
        self.exit_code = exit_code
        super().__init__(f"Realtime child (pid={pid}) crashed with exit code {exit_code}")


class FatalProcessError(HiggsError):
    """Uncaught exception or unhandled asynchronous error inside a worker."""

    def __init__(self, cause: BaseException | None = None, message: str | None = None):
        self.cause = cause
        super().__init__(message or f"Fatal error: {cause!r}")


class ShutdownTimeout(HiggsError):
    """Shutdown deadline passed with work still pending."""

    def __init__(self, timeout: float, pending: list[str]):
        self.timeout = timeout
        self.pending = pending
        super().__init__(
            f"Shutdown did not complete within {timeout}s "
            f"(pending: {', '.join(pending) or 'listener drain'})"
        )


class InvalidStateTransition(HiggsError):
    """A service handle was asked to move backwards."""
