from higgs_server.monitoring.monitored_object import DummyMonitoredObject, MonitoredObject
from higgs_server.monitoring.monitored_object_nats import MessengerMonitoredObject


def create_monitor(
    name: str,
    messenger=None,
    *,
    subject_prefix: str = 'svc',
    heartbeat_interval: float = 10.0,
    healthcheck_interval: float = 30.0,
    parent_name: str | None = None,
) -> MonitoredObject:
    """Factory function for creating monitored objects.

    The messenger is passed in explicitly by the owning WorkerContext:
    - open Messenger: MessengerMonitoredObject (status + heartbeats on NATS)
    - no messenger: DummyMonitoredObject (no-op)

    Args:
        name: Unique monitor name (used in NATS subjects: {prefix}.status.{name})
        messenger: serverish Messenger or None
        subject_prefix: NATS subject prefix (default: 'svc')
        heartbeat_interval: Heartbeat interval in seconds (default: 10)
        healthcheck_interval: Healthcheck interval in seconds (default: 30)
        parent_name: Optional parent name for hierarchical grouping in displays

    Returns:
        MonitoredObject implementation appropriate for current environment
    """
    if messenger is not None and messenger.is_open:
        return MessengerMonitoredObject(
            name=name,
            messenger=messenger,
            check_interval=heartbeat_interval,
            healthcheck_interval=healthcheck_interval,
            subject_prefix=subject_prefix,
            parent_name=parent_name,
        )

    return DummyMonitoredObject(name)
