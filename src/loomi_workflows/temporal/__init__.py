"""
Temporal-based orchestration for Loomi

- Workflows: follow-ups, demo booking, payment, integration sync
- Activities: WhatsApp, Cal.com, Stripe, SQL store, HubSpot / Meta / OpenAI
- Lanes: tier-based task queues, one Worker per lane

Key principle: workflows hold the state machine, activities do all I/O.
"""

from .activities import ActivitySet
from .client import OrchestrationClient, close_client, get_client, init_client
from .config import IntegrationSettings, RetrySettings, TemporalConfig
from .routing import Lane, LaneConfig, LaneSpec, TaskQueueRouter
from .worker import create_lane_worker, create_workers, run_worker
from .workflows import ALL_WORKFLOWS

__all__ = [
    # Workflows / activities
    "ALL_WORKFLOWS",
    "ActivitySet",
    # Infrastructure
    "OrchestrationClient",
    "init_client",
    "get_client",
    "close_client",
    "create_lane_worker",
    "create_workers",
    "run_worker",
    # Configuration
    "TemporalConfig",
    "RetrySettings",
    "IntegrationSettings",
    "Lane",
    "LaneConfig",
    "LaneSpec",
    "TaskQueueRouter",
]
