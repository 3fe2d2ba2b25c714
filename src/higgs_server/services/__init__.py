"""Built-in subsystem facades.

Importing this package registers every facade with the @facade registry.
"""
from higgs_server.services.analytics import AnalyticsFacade
from higgs_server.services.cache import CacheFacade
from higgs_server.services.monitoring import MonitoringFacade
from higgs_server.services.notification import NotificationFacade
from higgs_server.services.security import SecurityFacade

__all__ = [
    "AnalyticsFacade",
    "CacheFacade",
    "MonitoringFacade",
    "NotificationFacade",
    "SecurityFacade",
]
