"""
Temporal workflow and activities for durable index maintenance.
Rebuilds, tuning runs and purges can take minutes on large knowledge bases;
running them as activities gives retries and survives API restarts.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional
import asyncio

from temporalio import activity, workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ApplicationError

# Don't import services/models at workflow level - they use non-deterministic functions
# Import them only inside activities

MAINTENANCE_ACTIONS = ("rebuild", "tune", "purge")


@dataclass
class MaintenanceRequest:
    """Input for the maintenance workflow."""
    kb_id: str
    action: str = "rebuild"  # "rebuild" | "tune" | "purge"
    force_tune: bool = False


@dataclass
class MaintenanceResult:
    """Output of the maintenance workflow."""
    kb_id: str
    action: str
    result: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)


_service = None


def _knowledge_bases():
    # one service per worker process, sharing the configured snapshot repository
    global _service
    if _service is None:
        from hybrid_index.services.knowledge_base_service import KnowledgeBaseService
        _service = KnowledgeBaseService()
    return _service


def perform_maintenance(svc: Any, request: MaintenanceRequest) -> Dict[str, Any]:
    """Run one maintenance action against a KnowledgeBaseService (saves on success)."""
    # start from the latest snapshot; the API process may have saved since our last run
    svc.evict(request.kb_id)
    if request.action == "rebuild":
        return {"rebuilt": svc.rebuild_index(request.kb_id, request.force_tune)}
    if request.action == "tune":
        return svc.tune(request.kb_id)
    if request.action == "purge":
        return {"purged": svc.purge_deleted(request.kb_id)}
    raise ValueError(f"action must be one of {', '.join(MAINTENANCE_ACTIONS)}")


@activity.defn(name="run_maintenance")
async def run_maintenance_activity(request: MaintenanceRequest) -> Dict[str, Any]:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Maintenance activity: kb_id=%s action=%s force_tune=%s", request.kb_id, request.action, request.force_tune)

    # CPU-bound index work runs off the worker's event loop
    result = await asyncio.to_thread(perform_maintenance, _knowledge_bases(), request)
    logger.info("Maintenance %s for %s finished: %s", request.action, request.kb_id, result)
    return result


@activity.defn(name="collect_stats")
async def collect_stats_activity(kb_id: str) -> Dict[str, Any]:
    stats = await asyncio.to_thread(_knowledge_bases().get_stats, kb_id)
    # cluster sizes can be long; the workflow history only needs the summary
    cluster_stats = dict(stats.get("clusterStats", {}))
    cluster_stats.pop("clusterSizes", None)
    return {**stats, "clusterStats": cluster_stats}


@workflow.defn(name="IndexMaintenanceWorkflow")
class IndexMaintenanceWorkflow:
    def __init__(self) -> None:
        self.status = "PENDING"
        self.request: Optional[MaintenanceRequest] = None

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "kb_id": self.request.kb_id if self.request else None,
            "action": self.request.action if self.request else None,
        }

    @workflow.run
    async def run(self, request: MaintenanceRequest) -> MaintenanceResult:
        self.request = request
        if request.action not in MAINTENANCE_ACTIONS:
            self.status = "FAILED"
            raise ApplicationError(f"Unknown maintenance action: {request.action}", non_retryable=True)

        self.status = "RUNNING"
        workflow.logger.info("Maintenance %s started for %s", request.action, request.kb_id)
        result = await workflow.execute_activity(
            run_maintenance_activity,
            request,
            start_to_close_timeout=timedelta(minutes=30),
            retry_policy=RetryPolicy(maximum_attempts=3, non_retryable_error_types=["KnowledgeBaseNotFound", "ValueError"]),
        )

        self.status = "COLLECTING_STATS"
        stats = await workflow.execute_activity(
            collect_stats_activity,
            request.kb_id,
            start_to_close_timeout=timedelta(seconds=30),
        )
        self.status = "COMPLETED"
        return MaintenanceResult(kb_id=request.kb_id, action=request.action, result=result, stats=stats)
