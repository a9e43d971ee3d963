"""
Tests for OrchestrationClient against the time-skipping test server.

The client is handed the test environment's connection, so lane routing,
id reuse policies and signal delivery run against a real server.
"""

import asyncio

import pytest

from loomi_workflows.errors import DuplicateWorkflowError
from loomi_workflows.models import (
    ActivityRetry,
    FollowUpInput,
    FollowUpType,
    PaymentInput,
    PaymentStatus,
    ReengagementInput,
    RetryPlan,
    StripePlan,
    TenantTier,
)
from loomi_workflows.temporal.client import NOT_FOUND, OrchestrationClient, get_client
from loomi_workflows.temporal.config import RetrySettings, TemporalConfig
from loomi_workflows.temporal.workflows import FollowUpWorkflow, PaymentWorkflow


@pytest.fixture
def orchestration(workflow_env) -> OrchestrationClient:
    return OrchestrationClient(config=TemporalConfig(), client=workflow_env.client)


class TestLaneRouting:

    async def test_tiers_land_on_their_lanes(self, workflow_env, orchestration, make_lead):
        lead = make_lead()
        small = orchestration.tenant("tenant-small", TenantTier.STARTER)
        large = orchestration.tenant("tenant-large", TenantTier.BUSINESS)

        small_id = await orchestration.start_follow_up(
            FollowUpInput(tenant=small, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER)
        )
        large_id = await orchestration.start_follow_up(
            FollowUpInput(tenant=large, lead_id=lead.id, lead=lead, type=FollowUpType.PROPOSAL_REMINDER)
        )

        small_desc = await workflow_env.client.get_workflow_handle(small_id).describe()
        large_desc = await workflow_env.client.get_workflow_handle(large_id).describe()
        assert small_desc.task_queue == "loomi-shared"
        assert large_desc.task_queue == "loomi-priority"

    async def test_shared_lane_does_not_serve_priority_tenants(
        self, workflow_env, orchestration, run_worker, make_lead, services
    ):
        """Only the shared lane has a worker: the priority follow-up never starts."""
        lead = make_lead()
        small = orchestration.tenant("tenant-small", TenantTier.FREE)
        large = orchestration.tenant("tenant-large", TenantTier.GROWTH)
        now = await workflow_env.get_current_time()

        async with run_worker(task_queue="loomi-shared"):
            small_id = await orchestration.start_follow_up(
                FollowUpInput(tenant=small, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER, scheduled_for=now)
            )
            large_id = await orchestration.start_follow_up(
                FollowUpInput(tenant=large, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER, scheduled_for=now)
            )
            await workflow_env.client.get_workflow_handle(small_id).result()

            large_status = await orchestration.get_status(large_id)

        assert len(services.messages) == 1
        assert large_status.status == "RUNNING"

    async def test_saturated_shared_lane_does_not_hold_priority_work(
        self, workflow_env, orchestration, run_worker, make_lead, services, eventually
    ):
        """The shared lane's only activity slot is held; a priority follow-up still goes out."""
        small_lead = make_lead(phone="5215500000001")
        large_lead = make_lead(phone="5215500000002")
        small = orchestration.tenant("tenant-small", TenantTier.FREE)
        large = orchestration.tenant("tenant-large", TenantTier.BUSINESS)
        gate = services.gate("send_message", when=lambda params: params.phone == small_lead.phone)
        now = await workflow_env.get_current_time()

        async with run_worker(task_queue="loomi-shared", max_concurrent_activities=1), run_worker(
            task_queue="loomi-priority"
        ):
            small_id = await orchestration.start_follow_up(
                FollowUpInput(
                    tenant=small, lead_id=small_lead.id, lead=small_lead, type=FollowUpType.SAID_LATER, scheduled_for=now
                )
            )
            await asyncio.wait_for(gate.entered.wait(), timeout=10)
            large_id = await orchestration.start_follow_up(
                FollowUpInput(
                    tenant=large, lead_id=large_lead.id, lead=large_lead, type=FollowUpType.SAID_LATER, scheduled_for=now
                )
            )

            async def large_completed():
                return (await orchestration.get_status(large_id)).status == "COMPLETED"

            await eventually(large_completed)
            small_status = await orchestration.get_status(small_id)

            gate.release.set()
            await workflow_env.client.get_workflow_handle(small_id).result()

        assert small_status.status == "RUNNING"
        assert [m.phone for m in services.messages] == [large_lead.phone, small_lead.phone]

    async def test_tenant_context_carries_tier_limits(self, orchestration):
        tenant = orchestration.tenant("tenant-1", TenantTier.FREE)

        assert tenant.tier is TenantTier.FREE
        assert tenant.limits.max_follow_ups_per_lead == 2


class TestIdempotentStarts:

    async def test_payment_started_once_per_lead_and_plan(
        self, workflow_env, orchestration, run_worker, make_lead, services, eventually
    ):
        lead = make_lead()
        tenant = orchestration.tenant("tenant-1", TenantTier.STARTER)
        payment = PaymentInput(
            tenant=tenant, lead_id=lead.id, lead=lead, email="ana@example.com", plan=StripePlan.STARTER
        )

        async with run_worker(task_queue="loomi-shared"):
            first = await orchestration.start_payment(payment)
            second = await orchestration.start_payment(payment)
            assert first == second == f"payment-{lead.id}-starter"

            handle = workflow_env.client.get_workflow_handle_for(PaymentWorkflow.run, first)

            async def awaiting():
                status = await handle.query(PaymentWorkflow.status)
                return status["status"] == "awaiting_payment"

            await eventually(awaiting)
            # Webhook from a session created before workflow ids were stored in metadata
            delivered = await orchestration.signal_checkout_completed(
                {"lead_id": lead.id, "plan": "starter"}, session_id="cs_test_1", subscription_id="sub_9"
            )
            assert delivered is True
            result = await handle.result()

        assert result.status is PaymentStatus.COMPLETED
        assert result.subscription_id == "sub_9"
        assert len(services.checkouts) == 1

    async def test_reengagement_duplicate_rejected(self, orchestration, make_lead):
        lead = make_lead()
        tenant = orchestration.tenant("tenant-1")
        reengagement = ReengagementInput(tenant=tenant, lead_id=lead.id, lead=lead)

        await orchestration.start_reengagement(reengagement)

        with pytest.raises(DuplicateWorkflowError) as exc_info:
            await orchestration.start_reengagement(reengagement)
        assert exc_info.value.workflow_id == f"reengagement-{lead.id}"


class TestSignalsAndStatus:

    async def test_unknown_workflow(self, orchestration):
        status = await orchestration.get_status("followup-nope")

        assert status.status == NOT_FOUND
        assert await orchestration.cancel_follow_up("followup-nope") is False

    async def test_cancel_then_completed_status(self, workflow_env, orchestration, run_worker, make_lead, eventually):
        lead = make_lead()
        tenant = orchestration.tenant("tenant-1")

        async with run_worker(task_queue="loomi-shared"):
            workflow_id = await orchestration.start_follow_up(
                FollowUpInput(tenant=tenant, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER)
            )
            handle = workflow_env.client.get_workflow_handle_for(FollowUpWorkflow.run, workflow_id)

            async def record_created():
                return (await handle.query(FollowUpWorkflow.status))["follow_up_id"]

            await eventually(record_created)
            assert await orchestration.cancel_follow_up(workflow_id) is True
            await handle.result()

            status = await orchestration.get_status(workflow_id)

            # Closed workflows no longer accept signals
            assert await orchestration.cancel_follow_up(workflow_id) is False

        assert status.status == "COMPLETED"
        assert status.result["outcome"] == "cancelled"

    async def test_checkout_without_metadata_is_dropped(self, orchestration):
        assert await orchestration.signal_checkout_completed({}, session_id="cs_x", subscription_id="sub_x") is False


class TestProcessClient:

    def test_get_client_before_init(self):
        with pytest.raises(RuntimeError):
            get_client()


class TestRetryPlan:

    async def started_input(self, workflow_env, workflow_id: str) -> FollowUpInput:
        history = await workflow_env.client.get_workflow_handle(workflow_id).fetch_history()
        payloads = history.events[0].workflow_execution_started_event_attributes.input.payloads
        [started] = await workflow_env.client.data_converter.decode(payloads, [FollowUpInput])
        return started

    async def test_settings_are_stamped_on_inputs(self, workflow_env, make_lead):
        orchestration = OrchestrationClient(
            config=TemporalConfig(), client=workflow_env.client, retry=RetrySettings(default_max_attempts=7)
        )
        lead = make_lead()
        tenant = orchestration.tenant("tenant-1")

        workflow_id = await orchestration.start_follow_up(
            FollowUpInput(tenant=tenant, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER)
        )

        started = await self.started_input(workflow_env, workflow_id)
        assert started.retry.core.max_attempts == 7

    async def test_explicit_plan_is_kept(self, workflow_env, orchestration, make_lead):
        lead = make_lead()
        tenant = orchestration.tenant("tenant-1")
        plan = RetryPlan(core=ActivityRetry(max_attempts=1))

        workflow_id = await orchestration.start_follow_up(
            FollowUpInput(tenant=tenant, lead_id=lead.id, lead=lead, type=FollowUpType.SAID_LATER, retry=plan)
        )

        started = await self.started_input(workflow_env, workflow_id)
        assert started.retry == plan
