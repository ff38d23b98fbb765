"""
Temporal worker for index maintenance workflows and activities.
"""

import asyncio
import logging

from temporalio.client import Client
from temporalio.worker import Worker

from hybrid_index.core.config import settings
from hybrid_index.core.logging_config import configure_logging
from hybrid_index.temporal_workflows.client import TASK_QUEUE
from hybrid_index.temporal_workflows.maintenance_workflow import (
    IndexMaintenanceWorkflow,
    run_maintenance_activity,
    collect_stats_activity,
)

logger = logging.getLogger(__name__)


async def main():
    configure_logging()
    logger.info("Connecting to Temporal server at %s...", settings.TEMPORAL_ADDRESS)
    client = await Client.connect(settings.TEMPORAL_ADDRESS)
    logger.info("Connected to Temporal server")

    worker = Worker(
        client,
        task_queue=TASK_QUEUE,
        workflows=[IndexMaintenanceWorkflow],
        activities=[run_maintenance_activity, collect_stats_activity],
    )

    logger.info("Starting worker on task queue: %s (snapshot backend: %s)", TASK_QUEUE, settings.STORE_BACKEND)
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
