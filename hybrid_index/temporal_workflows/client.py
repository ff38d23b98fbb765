"""
Temporal client for starting maintenance workflows.
"""

from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

from temporalio.client import Client

from hybrid_index.core.config import settings
from hybrid_index.temporal_workflows.maintenance_workflow import MaintenanceRequest


TASK_QUEUE = "vector-db-maintenance-queue"


class TemporalMaintenanceClient:
    """
    Runs rebuild / tune / purge for a knowledge base as a durable workflow.
    """

    def __init__(self, temporal_url: str | None = None):
        # TEMPORAL_ADDRESS=temporal:7233 when running in Docker
        self.temporal_url = temporal_url or settings.TEMPORAL_ADDRESS
        self._client: Optional[Client] = None

    async def connect(self):
        """Connect to Temporal server."""
        if not self._client:
            self._client = await Client.connect(self.temporal_url)

    async def run_maintenance(self, request: MaintenanceRequest) -> Dict[str, Any]:
        """
        Start the maintenance workflow and wait for its result.
        Temporal may hand the result back as a dataclass or a plain dict.
        """
        await self.connect()

        handle = await self._client.start_workflow(
            "IndexMaintenanceWorkflow",
            request,
            id=f"maintenance-{request.kb_id}-{request.action}-{uuid4().hex[:8]}",
            task_queue=TASK_QUEUE,
        )
        result = await handle.result()
        if is_dataclass(result):
            return asdict(result)
        return result
