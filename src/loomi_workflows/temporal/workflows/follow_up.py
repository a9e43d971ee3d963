"""
Follow-up sequence workflows.

- FollowUpWorkflow: one nudge of a given type after its delay
- DemoRemindersWorkflow: 24h / 30min / post-demo reminders for an appointment
- ReengagementWorkflow: three attempts to revive a cold lead, then `lost`

Every step creates a pending FollowUpRecord, sleeps on a durable timer,
re-checks that nothing cancelled it, then claims the record (pending -> sent)
before sending. A record that is no longer pending is never sent.

Signals:
- cancelFollowUp: stop before the next side effect
- updateSchedule (DemoReminders): demo moved, recompute pending timers
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from ...models import (
        CLOSED_STAGES,
        AppointmentStatus,
        AppointmentStatusParams,
        CreateFollowUpParams,
        DemoRemindersInput,
        FollowUpInput,
        FollowUpOutcome,
        FollowUpResult,
        FollowUpType,
        Lead,
        LeadStage,
        ReengagementInput,
        ScheduleUpdate,
        RetryPlan,
        TenantCredentials,
    )
    from ..activities import PersistenceActivities
    from ..messages import (
        DEMO_OFFSETS,
        PRE_DEMO_TYPES,
        REENGAGEABLE_STAGES,
        REENGAGEMENT_SEQUENCE,
        RECENT_INTERACTION_WINDOW,
        follow_up_fire_time,
        follow_up_message,
    )
    from .common import aware, core_options, error_message, log_extra, send_text, set_lead_stage, sleep_until


async def _create_record(
    lead_id: str,
    type: FollowUpType,
    scheduled_for: datetime,
    message: str,
    appointment_id: Optional[str] = None,
    *,
    retry: RetryPlan,
) -> str:
    created = await workflow.execute_activity_method(
        PersistenceActivities.create_follow_up,
        CreateFollowUpParams(
            lead_id=lead_id,
            scheduled_for=scheduled_for,
            type=type,
            message=message,
            appointment_id=appointment_id,
            workflow_id=workflow.info().workflow_id,
        ),
        **core_options(retry),
    )
    return created.id


async def _cancel_record(follow_up_id: Optional[str], retry: RetryPlan) -> None:
    if follow_up_id:
        await workflow.execute_activity_method(
            PersistenceActivities.cancel_follow_up, follow_up_id, **core_options(retry)
        )


async def _claim_and_send(
    follow_up_id: str,
    lead: Lead,
    type: FollowUpType,
    credentials: Optional[TenantCredentials],
    retry: RetryPlan,
) -> bool:
    """
    Claim the record and send its message.

    Returns False if the record was no longer pending or delivery failed;
    a failed delivery marks the record `failed`.
    """
    claim = await workflow.execute_activity_method(
        PersistenceActivities.mark_follow_up_sent, follow_up_id, **core_options(retry)
    )
    if not claim.transitioned:
        workflow.logger.info(f"Follow-up {follow_up_id} no longer pending, not sending")
        return False

    try:
        delivered = await send_text(lead.phone, follow_up_message(type, lead), credentials, retry)
    except ActivityError as e:
        workflow.logger.warning(f"Follow-up {type.value} delivery failed: {error_message(e)}")
        delivered = False

    if not delivered:
        await workflow.execute_activity_method(
            PersistenceActivities.mark_follow_up_failed, follow_up_id, **core_options(retry)
        )
    return delivered


async def _current_lead(lead_id: str, retry: RetryPlan) -> Optional[Lead]:
    return await workflow.execute_activity_method(
        PersistenceActivities.get_lead, lead_id, **core_options(retry)
    )


# =============================================================================
# FollowUpWorkflow
# =============================================================================

@workflow.defn
class FollowUpWorkflow:
    """
    A single follow-up nudge.

    State machine: scheduled -> (cancelled | sent | skipped)
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._outcome = FollowUpOutcome.SCHEDULED
        self._follow_up_id: Optional[str] = None
        self._fire_at: Optional[datetime] = None

    @workflow.run
    async def run(self, input: FollowUpInput) -> FollowUpResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, type=input.type.value)
        workflow.logger.info("FollowUp workflow started", **extra)

        limit = input.tenant.limits.max_follow_ups_per_lead
        if limit > 0:
            count = await workflow.execute_activity_method(
                PersistenceActivities.count_follow_ups, input.lead_id, **core_options(input.retry)
            )
            if count >= limit:
                workflow.logger.info(f"Follow-up limit reached ({count}/{limit}), skipping", **extra)
                return self._finish(FollowUpOutcome.SKIPPED, "follow-up limit reached")

        now = workflow.now()
        if input.scheduled_for:
            self._fire_at = aware(input.scheduled_for)
        else:
            scheduled_at = aware(input.scheduled_at) if input.scheduled_at else None
            self._fire_at = follow_up_fire_time(input.type, now, scheduled_at)

        self._follow_up_id = await _create_record(
            input.lead_id,
            input.type,
            self._fire_at,
            follow_up_message(input.type, input.lead),
            input.appointment_id,
            retry=input.retry,
        )
        workflow.logger.info(f"Waiting until {self._fire_at.isoformat()} for {input.type.value}", **extra)

        await sleep_until(self._fire_at, lambda: self._cancelled)
        if self._cancelled:
            await _cancel_record(self._follow_up_id, input.retry)
            workflow.logger.info("FollowUp cancelled, exiting", **extra)
            return self._finish(FollowUpOutcome.CANCELLED, "cancelled by signal")

        lead = await _current_lead(input.lead_id, input.retry)
        reason = self._skip_reason(lead)
        if reason is None and input.appointment_id and input.type in PRE_DEMO_TYPES:
            appointment = await workflow.execute_activity_method(
                PersistenceActivities.get_appointment, input.appointment_id, **core_options(input.retry)
            )
            if appointment is None or appointment.status != AppointmentStatus.SCHEDULED:
                reason = "appointment no longer active"

        if reason:
            await _cancel_record(self._follow_up_id, input.retry)
            workflow.logger.info(f"Skipping follow-up: {reason}", **extra)
            return self._finish(FollowUpOutcome.SKIPPED, reason)

        if self._cancelled:
            await _cancel_record(self._follow_up_id, input.retry)
            return self._finish(FollowUpOutcome.CANCELLED, "cancelled by signal")

        sent = await _claim_and_send(self._follow_up_id, lead, input.type, input.credentials, input.retry)
        if not sent:
            return self._finish(FollowUpOutcome.SKIPPED, "not delivered")

        if input.type == FollowUpType.NO_SHOW_FOLLOWUP and input.appointment_id:
            await workflow.execute_activity_method(
                PersistenceActivities.update_appointment_status,
                AppointmentStatusParams(appointment_id=input.appointment_id, status=AppointmentStatus.NO_SHOW),
                **core_options(input.retry),
            )

        workflow.logger.info(f"Sent {input.type.value} follow-up", **extra)
        result = self._finish(FollowUpOutcome.SENT)
        result.sent.append(input.type)
        return result

    def _skip_reason(self, lead: Optional[Lead]) -> Optional[str]:
        if lead is None:
            return "lead not found"
        if lead.stage in CLOSED_STAGES:
            return f"lead is {lead.stage.value}"
        return None

    def _finish(self, outcome: FollowUpOutcome, reason: Optional[str] = None) -> FollowUpResult:
        self._outcome = outcome
        return FollowUpResult(outcome=outcome, reason=reason)

    @workflow.signal(name="cancelFollowUp")
    async def cancel_follow_up(self) -> None:
        """Cancel the follow-up before it is sent."""
        self._cancelled = True

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": self._outcome.value,
            "cancelled": self._cancelled,
            "follow_up_id": self._follow_up_id,
            "fire_at": self._fire_at.isoformat() if self._fire_at else None,
        }


# =============================================================================
# DemoRemindersWorkflow
# =============================================================================

REMINDER_STEPS = (FollowUpType.PRE_DEMO_24H, FollowUpType.PRE_DEMO_REMINDER, FollowUpType.POST_DEMO)


@workflow.defn
class DemoRemindersWorkflow:
    """
    Reminders around one demo appointment.

    Steps whose time has already passed when the workflow starts are skipped,
    except the post-demo follow-up. After the post-demo step the appointment
    is marked completed if it is still scheduled.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._scheduled_at: Optional[datetime] = None
        self._schedule_version = 0
        self._records: Dict[FollowUpType, str] = {}
        self._sent: List[FollowUpType] = []
        self._current: Optional[FollowUpType] = None
        self._outcome = FollowUpOutcome.SCHEDULED

    @workflow.run
    async def run(self, input: DemoRemindersInput) -> FollowUpResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, appointment_id=input.appointment_id)
        workflow.logger.info("DemoReminders workflow started", **extra)
        self._scheduled_at = aware(input.scheduled_at)

        now = workflow.now()
        for type in REMINDER_STEPS:
            fire_at = self._target(type)
            if type in PRE_DEMO_TYPES and fire_at <= now:
                continue
            self._records[type] = await _create_record(
                input.lead_id,
                type,
                max(fire_at, now),
                follow_up_message(type, input.lead),
                input.appointment_id,
                retry=input.retry,
            )

        for type in REMINDER_STEPS:
            record_id = self._records.get(type)
            if record_id is None:
                continue
            self._current = type

            fired = await self._wait_for_step(type)
            if self._cancelled:
                break
            if not fired:
                # Demo moved earlier and this step's time is gone
                await _cancel_record(record_id, input.retry)
                continue

            lead = await _current_lead(input.lead_id, input.retry)
            if lead is None or lead.stage in CLOSED_STAGES:
                await _cancel_record(record_id, input.retry)
                continue
            if type in PRE_DEMO_TYPES:
                appointment = await workflow.execute_activity_method(
                    PersistenceActivities.get_appointment, input.appointment_id, **core_options(input.retry)
                )
                if appointment is None or appointment.status != AppointmentStatus.SCHEDULED:
                    await _cancel_record(record_id, input.retry)
                    continue
            if self._cancelled:
                break

            if await _claim_and_send(record_id, lead, type, input.credentials, input.retry):
                self._sent.append(type)
                workflow.logger.info(f"Sent {type.value} reminder", **extra)

        self._current = None
        if self._cancelled:
            for record_id in self._records.values():
                await _cancel_record(record_id, input.retry)
            self._outcome = FollowUpOutcome.CANCELLED
            workflow.logger.info("DemoReminders cancelled", **extra)
            return FollowUpResult(outcome=self._outcome, sent=list(self._sent), reason="cancelled by signal")

        await workflow.execute_activity_method(
            PersistenceActivities.complete_appointment, input.appointment_id, **core_options(input.retry)
        )
        self._outcome = FollowUpOutcome.COMPLETED
        workflow.logger.info("DemoReminders completed", **extra)
        return FollowUpResult(outcome=self._outcome, sent=list(self._sent))

    def _target(self, type: FollowUpType) -> datetime:
        return self._scheduled_at + DEMO_OFFSETS[type]

    async def _wait_for_step(self, type: FollowUpType) -> bool:
        """
        Sleep until the step is due, following schedule updates.

        Returns False if after an update the step's time already passed
        (pre-demo steps only).
        """
        while True:
            version = self._schedule_version
            target = self._target(type)
            if type in PRE_DEMO_TYPES and target < workflow.now():
                return False
            interrupted = await sleep_until(
                target, lambda: self._cancelled or self._schedule_version != version
            )
            if self._cancelled:
                return False
            if not interrupted:
                return True

    @workflow.signal(name="cancelFollowUp")
    async def cancel_follow_up(self) -> None:
        self._cancelled = True

    @workflow.signal(name="updateSchedule")
    async def update_schedule(self, update: ScheduleUpdate) -> None:
        """The demo moved; pending steps are re-timed."""
        self._scheduled_at = aware(update.scheduled_at)
        self._schedule_version += 1

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": self._outcome.value,
            "cancelled": self._cancelled,
            "scheduled_at": self._scheduled_at.isoformat() if self._scheduled_at else None,
            "current_step": self._current.value if self._current else None,
            "sent": [t.value for t in self._sent],
        }


# =============================================================================
# ReengagementWorkflow
# =============================================================================

@workflow.defn
class ReengagementWorkflow:
    """
    Re-engage a cold lead: attempts after 24h, 60h and 168h.

    Stops when cancelled, when the lead is gone or has progressed past
    `contacted`, or when the lead interacted in the last 12 hours. After the
    last attempt the lead is marked `lost`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._attempt = 0
        self._outcome = FollowUpOutcome.SCHEDULED
        self._sent: List[FollowUpType] = []

    @workflow.run
    async def run(self, input: ReengagementInput) -> FollowUpResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id)
        workflow.logger.info("Reengagement workflow started", **extra)

        for attempt, (type, delay) in enumerate(REENGAGEMENT_SEQUENCE, start=1):
            self._attempt = attempt
            fire_at = workflow.now() + delay
            record_id = await _create_record(
                input.lead_id, type, fire_at, follow_up_message(type, input.lead), retry=input.retry
            )

            await sleep_until(fire_at, lambda: self._cancelled)
            if self._cancelled:
                await _cancel_record(record_id, input.retry)
                workflow.logger.info("Reengagement cancelled", **extra)
                return self._finish(FollowUpOutcome.CANCELLED, "cancelled by signal")

            lead = await _current_lead(input.lead_id, input.retry)
            reason = self._stop_reason(lead)
            if reason:
                await _cancel_record(record_id, input.retry)
                workflow.logger.info(f"Reengagement stopped: {reason}", **extra)
                outcome = FollowUpOutcome.SKIPPED if lead is None else FollowUpOutcome.STOPPED
                return self._finish(outcome, reason)

            if await _claim_and_send(record_id, lead, type, input.credentials, input.retry):
                self._sent.append(type)
                workflow.logger.info(f"Sent {type.value}", **{"extra": {**extra["extra"], "attempt": attempt}})

        if self._cancelled:
            return self._finish(FollowUpOutcome.CANCELLED, "cancelled by signal")

        if await set_lead_stage(input.lead_id, LeadStage.LOST, input.retry):
            workflow.logger.info("Lead marked as lost after reengagement sequence", **extra)
        return self._finish(FollowUpOutcome.COMPLETED)

    def _stop_reason(self, lead: Optional[Lead]) -> Optional[str]:
        if lead is None:
            return "lead not found"
        if lead.stage not in REENGAGEABLE_STAGES:
            return f"lead progressed to {lead.stage.value}"
        if lead.last_interaction and workflow.now() - aware(lead.last_interaction) < RECENT_INTERACTION_WINDOW:
            return "recent interaction"
        return None

    def _finish(self, outcome: FollowUpOutcome, reason: Optional[str] = None) -> FollowUpResult:
        self._outcome = outcome
        return FollowUpResult(outcome=outcome, sent=list(self._sent), reason=reason)

    @workflow.signal(name="cancelFollowUp")
    async def cancel_follow_up(self) -> None:
        self._cancelled = True

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": self._outcome.value,
            "cancelled": self._cancelled,
            "attempt": self._attempt,
            "sent": [t.value for t in self._sent],
        }
