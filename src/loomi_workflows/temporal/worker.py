"""
Temporal Worker for Loomi workflows

One Worker per lane, all in one process:
- loomi-shared: free / starter tenants
- loomi-priority: growth / business tenants
- loomi-{tenant}: one per allow-listed enterprise tenant

Each lane has its own concurrency cap, thread pool and ActivitySet (HTTP
clients and database pool sized to the cap), so a burst on one lane cannot
starve the others.

Usage:
    python -m loomi_workflows.temporal.worker

Or programmatically:
    from loomi_workflows.temporal import run_worker
    await run_worker()
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.worker import UnsandboxedWorkflowRunner, Worker

from ..storage import create_db_engine, create_session_factory
from .activities import ActivitySet
from .config import IntegrationSettings, TemporalConfig
from .routing import LaneSpec, TaskQueueRouter
from .workflows import ALL_WORKFLOWS

logger = logging.getLogger(__name__)

ActivityFactory = Callable[[LaneSpec], ActivitySet]


def create_lane_worker(
    client: Client,
    lane: LaneSpec,
    activities: ActivitySet,
    workflows: Optional[Sequence[type]] = None,
) -> Worker:
    """
    Create the Worker serving one lane.

    Synchronous activities (billing, persistence) run on a thread pool sized
    to the lane's cap.
    """
    # UnsandboxedWorkflowRunner: workflow modules import pydantic models and
    # activity classes whose dependencies do not load in the sandbox.
    # Workflows only use workflow.now() and durable timers.
    return Worker(
        client,
        task_queue=lane.task_queue,
        workflows=list(workflows or ALL_WORKFLOWS),
        activities=activities.callables(),
        activity_executor=ThreadPoolExecutor(max_workers=lane.max_concurrent),
        max_concurrent_activities=lane.max_concurrent,
        max_concurrent_workflow_tasks=lane.max_concurrent,
        workflow_runner=UnsandboxedWorkflowRunner(),
    )


def create_workers(
    client: Client,
    router: TaskQueueRouter,
    activities_for: ActivityFactory,
) -> List[Worker]:
    """One Worker per lane, each with the ActivitySet `activities_for` builds for it."""
    workers = []
    for lane in router.worker_lanes():
        logger.info(f"Lane {lane.lane.value}: queue '{lane.task_queue}', max {lane.max_concurrent} concurrent")
        workers.append(create_lane_worker(client, lane, activities_for(lane)))
    return workers


async def run_worker(
    config: Optional[TemporalConfig] = None,
    settings: Optional[IntegrationSettings] = None,
) -> None:
    """
    Run the workers for every lane (blocking).

    Connects to Temporal, opens the database and polls all lanes until
    interrupted (Ctrl+C).
    """
    config = config or TemporalConfig.from_env()
    settings = settings or IntegrationSettings.from_env()

    logger.info(f"Connecting to Temporal at {config.target}...")
    client = await Client.connect(
        config.target,
        namespace=config.namespace,
        api_key=config.api_key,
        tls=config.tls(),
        data_converter=pydantic_data_converter,
    )

    engines = []
    activity_sets: List[ActivitySet] = []

    def lane_activities(lane: LaneSpec) -> ActivitySet:
        engine = create_db_engine(settings.database_url, pool_size=lane.max_concurrent)
        engines.append(engine)
        activities = ActivitySet.create(
            settings, create_session_factory(engine), max_connections=lane.max_concurrent
        )
        activity_sets.append(activities)
        return activities

    router = TaskQueueRouter(config.enterprise_tenant_ids)
    workers = create_workers(client, router, lane_activities)

    logger.info(f"Connected. Starting {len(workers)} lane workers...")
    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    except asyncio.CancelledError:
        logger.info("Worker cancelled, shutting down...")
    finally:
        for activities in activity_sets:
            await activities.aclose()
        for engine in engines:
            engine.dispose()
        logger.info("Worker stopped.")


def main():
    """Entry point for running worker from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        print("\nWorker interrupted by user.")


if __name__ == "__main__":
    main()
