"""
Third-party synchronisation workflows.

Each integration branch is independent: a failing CRM does not stop the
conversion event or the memory summary, it is only logged.
"""

import asyncio
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from ...models import (
        BulkSyncInput,
        BulkSyncResult,
        ConversionParams,
        IntegrationSyncInput,
        IntegrationSyncResult,
        Lead,
        MemoryGenerationInput,
        MemoryResult,
        MemorySummaryParams,
        RecentMessagesParams,
        SaveMemoryParams,
        RetryPlan,
        SyncEvent,
    )
    from ..activities import IntegrationActivities, PersistenceActivities
    from ..messages import META_CONVERSION_EVENTS
    from .common import core_options, error_message, integration_options, log_extra

# Messages loaded for a memory summary
MEMORY_MESSAGE_LIMIT = 50


async def _generate_memory(lead_id: str, conversation_id: str, retry: RetryPlan) -> MemoryResult:
    messages = await workflow.execute_activity_method(
        PersistenceActivities.get_recent_messages,
        RecentMessagesParams(conversation_id=conversation_id, limit=MEMORY_MESSAGE_LIMIT),
        **core_options(retry),
    )
    summary = await workflow.execute_activity_method(
        IntegrationActivities.generate_memory_summary,
        MemorySummaryParams(lead_id=lead_id, messages=messages),
        **integration_options(retry),
    )
    if not summary:
        return MemoryResult(success=False, error="no summary generated")

    await workflow.execute_activity_method(
        PersistenceActivities.save_lead_memory,
        SaveMemoryParams(lead_id=lead_id, memory=summary),
        **core_options(retry),
    )
    return MemoryResult(success=True, memory=summary)


async def _sync_crm(lead: Lead, retry: RetryPlan) -> Optional[str]:
    result = await workflow.execute_activity_method(
        IntegrationActivities.sync_lead_to_crm, lead, **integration_options(retry)
    )
    if not result.success:
        workflow.logger.warning(f"CRM sync for lead {lead.id} failed: {result.error}")
        return None
    return result.contact_id


@workflow.defn
class IntegrationSyncWorkflow:
    """Push a business event to the CRM, the ad platform and lead memory."""

    def __init__(self) -> None:
        self._result = IntegrationSyncResult()
        self._errors: List[str] = []
        self._done = False

    @workflow.run
    async def run(self, input: IntegrationSyncInput) -> IntegrationSyncResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, event=input.event.value)
        workflow.logger.info("IntegrationSync workflow started", **extra)

        lead = await workflow.execute_activity_method(
            PersistenceActivities.get_lead, input.lead_id, **core_options(input.retry)
        )
        lead = lead or input.lead

        retry = input.retry
        branches = [self._crm(lead, retry)]
        if input.event in META_CONVERSION_EVENTS:
            branches.append(self._conversion(lead, META_CONVERSION_EVENTS[input.event], retry))
        if input.event == SyncEvent.CONVERSATION_ENDED and input.conversation_id:
            branches.append(self._memory(input.lead_id, input.conversation_id, retry))
        await asyncio.gather(*branches)

        self._done = True
        if self._errors:
            workflow.logger.warning(f"IntegrationSync finished with errors: {self._errors}", **extra)
        else:
            workflow.logger.info("IntegrationSync finished", **extra)
        return self._result

    async def _crm(self, lead: Lead, retry: RetryPlan) -> None:
        try:
            self._result.crm_contact_id = await _sync_crm(lead, retry)
        except ActivityError as e:
            self._errors.append(f"crm: {error_message(e)}")

    async def _conversion(self, lead: Lead, event_name: str, retry: RetryPlan) -> None:
        try:
            tracked = await workflow.execute_activity_method(
                IntegrationActivities.track_conversion,
                ConversionParams(event_name=event_name, lead=lead),
                **integration_options(retry),
            )
            self._result.conversion_tracked = tracked.success
        except ActivityError as e:
            self._errors.append(f"conversion: {error_message(e)}")

    async def _memory(self, lead_id: str, conversation_id: str, retry: RetryPlan) -> None:
        try:
            memory = await _generate_memory(lead_id, conversation_id, retry)
            self._result.memory_generated = memory.success
        except ActivityError as e:
            self._errors.append(f"memory: {error_message(e)}")

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": "completed" if self._done else "running",
            "result": self._result.model_dump(),
            "errors": list(self._errors),
        }


@workflow.defn
class BulkSyncWorkflow:
    """CRM sync for many leads, in concurrent batches with a pause in between."""

    def __init__(self) -> None:
        self._result = BulkSyncResult()
        self._total = 0

    @workflow.run
    async def run(self, input: BulkSyncInput) -> BulkSyncResult:
        extra = log_extra(input.tenant.tenant_id, leads=len(input.lead_ids))
        workflow.logger.info("BulkSync workflow started", **extra)
        self._total = len(input.lead_ids)

        for start in range(0, len(input.lead_ids), input.batch_size):
            if start:
                await asyncio.sleep(1)
            batch = input.lead_ids[start:start + input.batch_size]
            await asyncio.gather(*(self._sync_one(lead_id, input.retry) for lead_id in batch))

        workflow.logger.info(
            f"BulkSync finished: {self._result.synced} synced, {self._result.failed} failed", **extra
        )
        return self._result

    async def _sync_one(self, lead_id: str, retry: RetryPlan) -> None:
        try:
            lead = await workflow.execute_activity_method(
                PersistenceActivities.get_lead, lead_id, **core_options(retry)
            )
            if lead is None:
                self._fail(lead_id, "lead not found")
                return
            contact_id = await _sync_crm(lead, retry)
        except ActivityError as e:
            self._fail(lead_id, error_message(e))
            return
        if contact_id is None:
            self._fail(lead_id, "crm rejected the contact")
        else:
            self._result.synced += 1

    def _fail(self, lead_id: str, error: str) -> None:
        self._result.failed += 1
        self._result.errors.append(f"{lead_id}: {error}")

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "total": self._total,
            "synced": self._result.synced,
            "failed": self._result.failed,
        }


@workflow.defn
class MemoryGenerationWorkflow:
    """Summarise a finished conversation into the lead's memory."""

    def __init__(self) -> None:
        self._status = "running"

    @workflow.run
    async def run(self, input: MemoryGenerationInput) -> MemoryResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, conversation_id=input.conversation_id)
        workflow.logger.info("MemoryGeneration workflow started", **extra)
        try:
            result = await _generate_memory(input.lead_id, input.conversation_id, input.retry)
        except ActivityError as e:
            workflow.logger.error(f"Memory generation failed: {error_message(e)}", **extra)
            result = MemoryResult(success=False, error=error_message(e))
        self._status = "completed" if result.success else "skipped"
        return result

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {"status": self._status}
