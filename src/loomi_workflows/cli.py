#!/usr/bin/env python3
"""
Loomi workflows CLI.

Usage:
    loomi-workflows worker
    loomi-workflows lanes
    loomi-workflows status <workflow_id>
    loomi-workflows cancel <workflow_id> --kind follow-up|booking|payment
    loomi-workflows pending [--window 5] [--limit 100]

Examples:
    # Run the lane workers
    loomi-workflows worker

    # Where do tenants of each tier run?
    loomi-workflows lanes

    # Inspect a payment
    loomi-workflows status payment-lead-123-growth
"""

import argparse
import asyncio
import logging
import sys

from .models import PendingFollowUpsParams, TenantTier
from .storage import create_db_engine, create_session_factory
from .temporal.activities import PersistenceActivities
from .temporal.client import OrchestrationClient
from .temporal.config import IntegrationSettings, TemporalConfig
from .temporal.routing import TaskQueueRouter
from .temporal.worker import run_worker

CANCEL_SIGNALS = {
    "follow-up": "cancel_follow_up",
    "booking": "cancel_booking",
    "payment": "cancel_payment",
}


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s" if verbose else "%(message)s",
    )
    # Quiet down noisy loggers
    if not verbose:
        logging.getLogger("temporalio").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)


def show_lanes() -> int:
    """Print the tier -> task queue mapping and the queues a worker polls."""
    router = TaskQueueRouter(TemporalConfig.from_env().enterprise_tenant_ids)

    print("\nTier routing:")
    print("=" * 50)
    for tier in TenantTier:
        queue = router.task_queue_for("<tenant>", tier)
        limit = router.limits_for(tier).max_follow_ups_per_lead
        print(f"  {tier.value:<11} -> {queue:<20} follow-ups/lead: {'unlimited' if limit < 0 else limit}")

    print("\nWorker lanes:")
    print("=" * 50)
    for lane in router.worker_lanes():
        print(f"  {lane.task_queue:<24} max concurrent: {lane.max_concurrent}")
    return 0


async def show_status(workflow_id: str) -> int:
    async with OrchestrationClient() as client:
        status = await client.get_status(workflow_id)
    print(f"\n{status.workflow_id}: {status.status}")
    if status.result is not None:
        print(f"  Result: {status.result}")
    return 1 if status.status == "NOT_FOUND" else 0


async def cancel(workflow_id: str, kind: str) -> int:
    async with OrchestrationClient() as client:
        delivered = await getattr(client, CANCEL_SIGNALS[kind])(workflow_id)
    if not delivered:
        print(f"\n{workflow_id} not found or already closed")
        return 1
    print(f"\nCancel sent to {workflow_id}")
    return 0


def show_pending(window: int, limit: int) -> int:
    """List follow-ups due within the window, straight from the store."""
    settings = IntegrationSettings.from_env()
    engine = create_db_engine(settings.database_url)
    store = PersistenceActivities(create_session_factory(engine))
    records = store.get_pending_follow_ups(PendingFollowUpsParams(window_minutes=window, limit=limit))
    engine.dispose()

    print(f"\nPending follow-ups (next {window} min): {len(records)}")
    print("=" * 50)
    for record in records:
        print(f"  {record.scheduled_for.isoformat()}  {record.type.value:<24} lead={record.lead_id}  wf={record.workflow_id}")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Loomi workflows - durable sales processes on Temporal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s worker
  %(prog)s lanes
  %(prog)s status payment-lead-123-growth
  %(prog)s cancel booking-lead-123-1718000000000 --kind booking
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("worker", help="Run the lane workers")
    subparsers.add_parser("lanes", help="Show tier routing and worker lanes")

    status_parser = subparsers.add_parser("status", help="Show workflow status")
    status_parser.add_argument("workflow_id")

    cancel_parser = subparsers.add_parser("cancel", help="Send a cancel signal")
    cancel_parser.add_argument("workflow_id")
    cancel_parser.add_argument("--kind", choices=sorted(CANCEL_SIGNALS), required=True)

    pending_parser = subparsers.add_parser("pending", help="List follow-ups due soon")
    pending_parser.add_argument("--window", type=int, default=5, help="Minutes ahead")
    pending_parser.add_argument("--limit", type=int, default=100)

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command == "worker":
        try:
            asyncio.run(run_worker())
        except KeyboardInterrupt:
            print("\nWorker interrupted by user.")
        return 0
    elif args.command == "lanes":
        return show_lanes()
    elif args.command == "status":
        return asyncio.run(show_status(args.workflow_id))
    elif args.command == "cancel":
        return asyncio.run(cancel(args.workflow_id, args.kind))
    elif args.command == "pending":
        return show_pending(args.window, args.limit)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
