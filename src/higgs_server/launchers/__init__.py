"""Process launchers: CLI helpers and realtime child supervision.

The multi-worker Supervisor lives in higgs_server.launchers.supervisor and
is imported directly by higgsd.
"""

from .base_launcher import BaseLauncher
from .realtime import ChildProcessHandle, RealtimeChildSupervisor


__all__ = [
    'BaseLauncher',
    'ChildProcessHandle',
    'RealtimeChildSupervisor',
]
