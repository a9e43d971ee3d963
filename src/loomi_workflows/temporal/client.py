"""
Orchestration client for Loomi workflows.

The boundary the rest of the product (agent, webhooks) uses to start,
signal and inspect workflows. Every start computes the deterministic
workflow id and places the workflow on the tenant's lane.

Usage:
    async with OrchestrationClient() as client:
        workflow_id = await client.start_payment(payment_input)
        status = await client.get_status(workflow_id)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from temporalio.client import Client, WorkflowExecutionStatus
from temporalio.common import WorkflowIDReusePolicy
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from ..errors import DuplicateWorkflowError
from ..models import (
    BulkSyncInput,
    CalSlot,
    CancelBookingInput,
    DemoBookingInput,
    DemoRemindersInput,
    FollowUpInput,
    IntegrationSyncInput,
    MemoryGenerationInput,
    PaymentCompleted,
    PaymentInput,
    ReengagementInput,
    RescheduleInput,
    StripePlan,
    TenantContext,
    TenantTier,
    WorkflowStatus,
)
from . import workflow_ids
from .config import RetrySettings, TemporalConfig
from .routing import TaskQueueRouter
from .workflows import (
    BulkSyncWorkflow,
    CancelBookingWorkflow,
    DemoBookingWorkflow,
    DemoRemindersWorkflow,
    FollowUpWorkflow,
    IntegrationSyncWorkflow,
    MemoryGenerationWorkflow,
    PaymentWorkflow,
    ReengagementWorkflow,
    RescheduleWorkflow,
)

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrchestrationClient:
    """
    Temporal client wrapper for Loomi.

    The connection is opened lazily on first use; concurrent first calls
    share one connection attempt. Inputs that do not set `retry` are started
    with the retry plan built from `retry` settings (environment by default).
    """

    def __init__(
        self,
        config: Optional[TemporalConfig] = None,
        router: Optional[TaskQueueRouter] = None,
        client: Optional[Client] = None,
        retry: Optional[RetrySettings] = None,
    ):
        self.config = config or TemporalConfig.from_env()
        self.retry = retry or RetrySettings.from_env()
        self.router = router or TaskQueueRouter(self.config.enterprise_tenant_ids)
        self._client = client
        self._lock = asyncio.Lock()

    async def connect(self) -> Client:
        """Connect to Temporal server (once)."""
        async with self._lock:
            if self._client is None:
                logger.info(f"Connecting to Temporal at {self.config.target} (namespace {self.config.namespace})")
                self._client = await Client.connect(
                    self.config.target,
                    namespace=self.config.namespace,
                    api_key=self.config.api_key,
                    tls=self.config.tls(),
                    data_converter=pydantic_data_converter,
                )
        return self._client

    async def close(self) -> None:
        """Drop the connection; the next call reconnects."""
        async with self._lock:
            self._client = None

    async def __aenter__(self) -> "OrchestrationClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def tenant(self, tenant_id: str, tier: TenantTier = TenantTier.STARTER) -> TenantContext:
        """TenantContext carrying the configured limits of the tier."""
        return self.router.build_tenant_context(tenant_id, tier)

    async def _start(
        self,
        run: Any,
        arg: Any,
        *,
        workflow_id: str,
        tenant: TenantContext,
        reject_duplicate: bool = False,
    ) -> str:
        client = await self.connect()
        task_queue = self.router.task_queue_for_tenant(tenant)
        if "retry" not in arg.model_fields_set:
            arg = arg.model_copy(update={"retry": self.retry.plan()})
        policy = WorkflowIDReusePolicy.REJECT_DUPLICATE if reject_duplicate else WorkflowIDReusePolicy.ALLOW_DUPLICATE
        try:
            handle = await client.start_workflow(
                run,
                arg,
                id=workflow_id,
                task_queue=task_queue,
                id_reuse_policy=policy,
            )
        except WorkflowAlreadyStartedError as e:
            logger.info(
                f"Workflow {workflow_id} already started",
                extra={"tenant_id": tenant.tenant_id, "workflow_id": workflow_id},
            )
            raise DuplicateWorkflowError(workflow_id) from e

        logger.info(
            f"Started {workflow_id} on {task_queue}",
            extra={"tenant_id": tenant.tenant_id, "workflow_id": workflow_id},
        )
        return handle.id

    # =========================================================================
    # Follow-ups
    # =========================================================================

    async def start_follow_up(self, input: FollowUpInput) -> str:
        return await self._start(
            FollowUpWorkflow.run,
            input,
            workflow_id=workflow_ids.follow_up_id(input.type, input.lead_id, _utcnow()),
            tenant=input.tenant,
        )

    async def start_demo_reminders(self, input: DemoRemindersInput) -> str:
        return await self._start(
            DemoRemindersWorkflow.run,
            input,
            workflow_id=workflow_ids.demo_reminders_id(input.appointment_id),
            tenant=input.tenant,
        )

    async def start_reengagement(self, input: ReengagementInput) -> str:
        """Raises DuplicateWorkflowError if the lead was already re-engaged."""
        return await self._start(
            ReengagementWorkflow.run,
            input,
            workflow_id=workflow_ids.reengagement_id(input.lead_id),
            tenant=input.tenant,
            reject_duplicate=True,
        )

    async def cancel_follow_up(self, workflow_id: str) -> bool:
        """Works for follow-up, demo reminder and re-engagement workflows."""
        return await self._signal(workflow_id, "cancelFollowUp")

    # =========================================================================
    # Bookings
    # =========================================================================

    async def start_demo_booking(self, input: DemoBookingInput) -> str:
        return await self._start(
            DemoBookingWorkflow.run,
            input,
            workflow_id=workflow_ids.booking_id(input.lead_id, _utcnow()),
            tenant=input.tenant,
        )

    async def start_reschedule(self, input: RescheduleInput) -> str:
        return await self._start(
            RescheduleWorkflow.run,
            input,
            workflow_id=workflow_ids.reschedule_id(input.appointment_id, _utcnow()),
            tenant=input.tenant,
        )

    async def start_cancel_booking(self, input: CancelBookingInput) -> str:
        return await self._start(
            CancelBookingWorkflow.run,
            input,
            workflow_id=workflow_ids.cancel_booking_id(input.appointment_id),
            tenant=input.tenant,
            reject_duplicate=True,
        )

    async def reschedule_booking(self, workflow_id: str, slot: CalSlot) -> bool:
        return await self._signal(workflow_id, "reschedule", slot)

    async def cancel_booking(self, workflow_id: str) -> bool:
        return await self._signal(workflow_id, "cancelBooking")

    # =========================================================================
    # Payments
    # =========================================================================

    async def start_payment(self, input: PaymentInput) -> str:
        """
        Start checkout for (lead, plan).

        A second start for the same pair starts nothing and returns the id of
        the existing workflow.
        """
        workflow_id = workflow_ids.payment_id(input.lead_id, input.plan)
        try:
            return await self._start(
                PaymentWorkflow.run,
                input,
                workflow_id=workflow_id,
                tenant=input.tenant,
                reject_duplicate=True,
            )
        except DuplicateWorkflowError:
            return workflow_id

    async def signal_payment_completed(self, workflow_id: str, session_id: str, subscription_id: str) -> bool:
        return await self._signal(
            workflow_id,
            "paymentCompleted",
            PaymentCompleted(session_id=session_id, subscription_id=subscription_id),
        )

    async def signal_checkout_completed(
        self,
        metadata: Mapping[str, str],
        session_id: str,
        subscription_id: str,
    ) -> bool:
        """
        Route a `checkout.session.completed` webhook to its workflow.

        The session metadata carries the workflow id; older sessions without
        it are matched by lead id and plan.
        """
        workflow_id = metadata.get("workflow_id")
        if not workflow_id and metadata.get("lead_id") and metadata.get("plan"):
            workflow_id = workflow_ids.payment_id(metadata["lead_id"], StripePlan(metadata["plan"]))
        if not workflow_id:
            logger.warning(f"Checkout session {session_id} has no workflow metadata")
            return False
        return await self.signal_payment_completed(workflow_id, session_id, subscription_id)

    async def cancel_payment(self, workflow_id: str) -> bool:
        return await self._signal(workflow_id, "cancelPayment")

    # =========================================================================
    # Integrations
    # =========================================================================

    async def start_integration_sync(self, input: IntegrationSyncInput) -> str:
        return await self._start(
            IntegrationSyncWorkflow.run,
            input,
            workflow_id=workflow_ids.integration_sync_id(input.lead_id, input.event.value, _utcnow()),
            tenant=input.tenant,
        )

    async def start_bulk_sync(self, input: BulkSyncInput) -> str:
        return await self._start(
            BulkSyncWorkflow.run,
            input,
            workflow_id=workflow_ids.bulk_sync_id(input.tenant.tenant_id, _utcnow()),
            tenant=input.tenant,
        )

    async def start_memory_generation(self, input: MemoryGenerationInput) -> str:
        """Raises DuplicateWorkflowError if the conversation was already summarised."""
        return await self._start(
            MemoryGenerationWorkflow.run,
            input,
            workflow_id=workflow_ids.memory_id(input.conversation_id),
            tenant=input.tenant,
            reject_duplicate=True,
        )

    # =========================================================================
    # Signals and status
    # =========================================================================

    async def _signal(self, workflow_id: str, signal: str, arg: Any = None) -> bool:
        """Signal a workflow; False if it does not exist or already closed."""
        handle = (await self.connect()).get_workflow_handle(workflow_id)
        try:
            if arg is None:
                await handle.signal(signal)
            else:
                await handle.signal(signal, arg)
        except RPCError as e:
            if e.status == RPCStatusCode.NOT_FOUND:
                logger.warning(f"Signal {signal} not delivered, {workflow_id} not found or closed")
                return False
            raise
        logger.info(f"Signal {signal} sent to {workflow_id}")
        return True

    async def get_status(self, workflow_id: str) -> WorkflowStatus:
        """Execution status of a workflow, with its result once completed."""
        handle = (await self.connect()).get_workflow_handle(workflow_id)
        try:
            desc = await handle.describe()
        except RPCError as e:
            if e.status == RPCStatusCode.NOT_FOUND:
                return WorkflowStatus(workflow_id=workflow_id, status=NOT_FOUND)
            raise

        status = desc.status.name if desc.status else "UNKNOWN"
        result = None
        if desc.status == WorkflowExecutionStatus.COMPLETED:
            result = await handle.result()
        return WorkflowStatus(workflow_id=workflow_id, status=status, result=result)


# =============================================================================
# Process-wide instance
# =============================================================================

_client: Optional[OrchestrationClient] = None


async def init_client(config: Optional[TemporalConfig] = None) -> OrchestrationClient:
    """Create and connect the process-wide client (call from bootstrap)."""
    global _client
    if _client is None:
        _client = OrchestrationClient(config)
        await _client.connect()
    return _client


def get_client() -> OrchestrationClient:
    if _client is None:
        raise RuntimeError("Orchestration client not initialised. Call init_client() at startup")
    return _client


async def close_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
