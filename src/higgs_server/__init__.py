"""higgs-server: multi-process game server entry point.

Supervisor, worker bootstrap and shutdown orchestration around the
monitoring, cache, security, analytics and notification facades.
"""

__version__ = "0.1.0"
