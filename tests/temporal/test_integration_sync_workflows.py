"""
Tests for IntegrationSyncWorkflow, BulkSyncWorkflow and MemoryGenerationWorkflow.
"""

import uuid

from loomi_workflows.errors import TransientAPIError
from loomi_workflows.models import (
    BulkSyncInput,
    CrmSyncResult,
    IntegrationSyncInput,
    LeadStage,
    MemoryGenerationInput,
    SaveMessageParams,
    SyncEvent,
)
from loomi_workflows.temporal.workflows import BulkSyncWorkflow, IntegrationSyncWorkflow, MemoryGenerationWorkflow


def wf_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def seed_conversation(store, lead_id: str, conversation_id: str = "conv-1") -> None:
    for role, content in [
        ("user", "Hola, tengo una clínica dental"),
        ("assistant", "¡Qué gusto! ¿Cuántos pacientes te escriben al día?"),
        ("user", "Como 80, y no alcanzo a contestar"),
        ("assistant", "Loomi puede responderles y agendar citas."),
    ]:
        store.save_message(SaveMessageParams(conversation_id=conversation_id, role=role, content=content, lead_id=lead_id))


class TestIntegrationSyncWorkflow:

    async def test_syncs_current_lead_state(self, workflow_env, run_worker, services, make_lead, tenant, update_lead_row):
        """The lead is re-read, so the CRM gets the stage at sync time."""
        lead = make_lead()
        update_lead_row(lead.id, stage=LeadStage.DEMO_SCHEDULED)

        async with run_worker() as worker:
            result = await workflow_env.client.execute_workflow(
                IntegrationSyncWorkflow.run,
                IntegrationSyncInput(tenant=tenant, lead_id=lead.id, lead=lead, event=SyncEvent.DEMO_SCHEDULED),
                id=wf_id("sync"),
                task_queue=worker.task_queue,
            )

        assert result.crm_contact_id == "hs-1"
        assert result.conversion_tracked is True
        assert result.memory_generated is False
        assert services.crm_synced[0].stage is LeadStage.DEMO_SCHEDULED
        assert services.conversions[0].event_name == "Schedule"
        assert services.summaries == []

    async def test_crm_failure_does_not_block_other_branches(
        self, workflow_env, run_worker, services, make_lead, tenant, eventually
    ):
        lead = make_lead()
        services.crm_error = TransientAPIError("hubspot", "bad gateway", status_code=502)

        async with run_worker() as worker:
            handle = await workflow_env.client.start_workflow(
                IntegrationSyncWorkflow.run,
                IntegrationSyncInput(tenant=tenant, lead_id=lead.id, lead=lead, event=SyncEvent.PAYMENT_COMPLETED),
                id=wf_id("sync"),
                task_queue=worker.task_queue,
            )
            result = await handle.result()
            status = await handle.query(IntegrationSyncWorkflow.status)

        assert result.crm_contact_id is None
        assert result.conversion_tracked is True
        assert services.conversions[0].event_name == "Purchase"
        # Integration retry policy: 5 attempts
        assert len(services.crm_synced) == 5
        assert status["status"] == "completed"
        assert status["errors"][0].startswith("crm:")

    async def test_conversation_ended_generates_memory(
        self, workflow_env, run_worker, services, make_lead, store, tenant
    ):
        lead = make_lead()
        seed_conversation(store, lead.id)

        async with run_worker() as worker:
            result = await workflow_env.client.execute_workflow(
                IntegrationSyncWorkflow.run,
                IntegrationSyncInput(
                    tenant=tenant,
                    lead_id=lead.id,
                    lead=lead,
                    event=SyncEvent.CONVERSATION_ENDED,
                    conversation_id="conv-1",
                ),
                id=wf_id("sync"),
                task_queue=worker.task_queue,
            )

        assert result.memory_generated is True
        assert services.conversions[0].event_name == "Contact"
        assert len(services.summaries[0].messages) == 4
        assert services.summaries[0].messages[0].content == "Hola, tengo una clínica dental"
        assert store.get_lead_memory(lead.id) == "Ana, Clínica Sol, quiere automatizar citas."


class TestBulkSyncWorkflow:

    async def test_batches_and_counts(self, workflow_env, run_worker, services, make_lead, tenant):
        lead_ids = [make_lead().id for _ in range(5)] + ["lead-missing"]

        async with run_worker() as worker:
            handle = await workflow_env.client.start_workflow(
                BulkSyncWorkflow.run,
                BulkSyncInput(tenant=tenant, lead_ids=lead_ids, batch_size=2),
                id=wf_id("bulk-sync"),
                task_queue=worker.task_queue,
            )
            result = await handle.result()
            status = await handle.query(BulkSyncWorkflow.status)

        assert result.synced == 5
        assert result.failed == 1
        assert result.errors == ["lead-missing: lead not found"]
        assert sorted(lead.id for lead in services.crm_synced) == sorted(lead_ids[:5])
        assert status == {"total": 6, "synced": 5, "failed": 1}

    async def test_crm_rejection_counts_as_failure(self, workflow_env, run_worker, services, make_lead, tenant):
        lead_ids = [make_lead().id for _ in range(3)]
        services.crm_result = CrmSyncResult(success=False, error="HubSpot API key not configured")

        async with run_worker() as worker:
            result = await workflow_env.client.execute_workflow(
                BulkSyncWorkflow.run,
                BulkSyncInput(tenant=tenant, lead_ids=lead_ids),
                id=wf_id("bulk-sync"),
                task_queue=worker.task_queue,
            )

        assert result.synced == 0
        assert result.failed == 3


class TestMemoryGenerationWorkflow:

    async def test_saves_summary(self, workflow_env, run_worker, services, make_lead, store, tenant):
        lead = make_lead()
        seed_conversation(store, lead.id, "conv-9")

        async with run_worker() as worker:
            result = await workflow_env.client.execute_workflow(
                MemoryGenerationWorkflow.run,
                MemoryGenerationInput(tenant=tenant, lead_id=lead.id, conversation_id="conv-9"),
                id="memory-conv-9",
                task_queue=worker.task_queue,
            )

        assert result.success is True
        assert result.memory == store.get_lead_memory(lead.id)

    async def test_no_summary_leaves_memory_untouched(self, workflow_env, run_worker, services, make_lead, store, tenant):
        lead = make_lead()
        services.summary = None

        async with run_worker() as worker:
            result = await workflow_env.client.execute_workflow(
                MemoryGenerationWorkflow.run,
                MemoryGenerationInput(tenant=tenant, lead_id=lead.id, conversation_id="conv-empty"),
                id="memory-conv-empty",
                task_queue=worker.task_queue,
            )

        assert result.success is False
        assert store.get_lead_memory(lead.id) is None
