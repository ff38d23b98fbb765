"""
Temporal workflows package.
"""

from .maintenance_workflow import (
    IndexMaintenanceWorkflow,
    MaintenanceRequest,
    MaintenanceResult,
    run_maintenance_activity,
    collect_stats_activity,
)
from .client import TemporalMaintenanceClient, TASK_QUEUE

__all__ = [
    "IndexMaintenanceWorkflow",
    "MaintenanceRequest",
    "MaintenanceResult",
    "run_maintenance_activity",
    "collect_stats_activity",
    "TemporalMaintenanceClient",
    "TASK_QUEUE",
]
