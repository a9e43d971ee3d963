"""
Demo booking workflows.

DemoBookingWorkflow books a demo end to end and stays open until the demo
ends so that reschedules and cancellations arrive as signals:

    creating -> scheduled -> (completed | cancelled)
             -> failed

Steps that create external state are compensated when a later step fails:
the calendar event is cancelled if the appointment cannot be stored, and
both are undone if the lead stage cannot be advanced. A cancel that arrives
while these steps run releases whatever was created and nothing is
confirmed to the lead.

RescheduleWorkflow and CancelBookingWorkflow apply the same effects for a
booking whose workflow is no longer open.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Tuple

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError, WorkflowAlreadyStartedError

with workflow.unsafe.imports_passed_through():
    from ...models import (
        AppointmentStatus,
        AppointmentStatusParams,
        BookingStatus,
        BookingWorkflowResult,
        CalSlot,
        CancelBookingInput,
        CancelFollowUpsParams,
        CreateAppointmentParams,
        CreateEventParams,
        DemoBookingInput,
        DemoRemindersInput,
        Lead,
        LeadStage,
        RescheduleAppointmentParams,
        RescheduleEventParams,
        RescheduleFollowUpsParams,
        RescheduleInput,
        RetryPlan,
        ScheduleUpdate,
        SendButtonsParams,
        TenantCredentials,
        demo_end,
    )
    from ..activities import CalendarActivities, PersistenceActivities, WhatsAppActivities
    from ..messages import (
        BOOKING_FAILED,
        CONFIRM_BUTTONS_TEXT,
        RESCHEDULE_FAILED,
        booking_cancelled,
        booking_confirmation,
        reschedule_confirmation,
    )
    from ..workflow_ids import demo_reminders_id
    from .common import aware, core_options, error_message, log_extra, notify, set_lead_stage, signal_external
    from .follow_up import DemoRemindersWorkflow


def _booking_failed(message: str) -> ApplicationError:
    return ApplicationError(message, type="BookingFailed", non_retryable=True)


async def _cancel_event(event_id: str, retry: RetryPlan) -> None:
    try:
        result = await workflow.execute_activity_method(
            CalendarActivities.cancel_event, event_id, **core_options(retry)
        )
        if not result.success:
            workflow.logger.warning(f"Calendar refused to cancel event {event_id}: {result.error}")
    except ActivityError as e:
        workflow.logger.error(f"Could not cancel event {event_id}: {error_message(e)}")


async def _restore_event(event_id: str, start: datetime, retry: RetryPlan) -> None:
    try:
        result = await workflow.execute_activity_method(
            CalendarActivities.reschedule_event,
            RescheduleEventParams(event_id=event_id, new_start=start),
            **core_options(retry),
        )
        if not result.success:
            workflow.logger.error(f"Calendar refused to move event {event_id} back: {result.error}")
    except ActivityError as e:
        workflow.logger.error(f"Could not move event {event_id} back: {error_message(e)}")


async def _set_appointment_status(appointment_id: str, status: AppointmentStatus, retry: RetryPlan) -> None:
    await workflow.execute_activity_method(
        PersistenceActivities.update_appointment_status,
        AppointmentStatusParams(appointment_id=appointment_id, status=status),
        **core_options(retry),
    )


async def _apply_reschedule(
    lead: Lead,
    event_id: str,
    appointment_id: str,
    slot: CalSlot,
    previous_start: datetime,
    credentials: Optional[TenantCredentials],
    retry: RetryPlan,
) -> Optional[datetime]:
    """
    Move an existing booking to `slot`.

    The calendar event is moved, never re-created; the appointment row and
    its pending reminder records are updated in place and the reminders
    workflow is told about the new time. If the appointment row cannot be
    moved, the event goes back to `previous_start`. Returns the new start,
    or None if the booking was left where it was.
    """
    moved = await workflow.execute_activity_method(
        CalendarActivities.reschedule_event,
        RescheduleEventParams(event_id=event_id, new_slot=slot),
        **core_options(retry),
    )
    if not moved.success or moved.start_at is None:
        workflow.logger.warning(f"Reschedule of event {event_id} rejected: {moved.error}")
        await notify(lead.phone, RESCHEDULE_FAILED, credentials, retry)
        return None

    new_start = aware(moved.start_at)
    stored = await workflow.execute_activity_method(
        PersistenceActivities.reschedule_appointment,
        RescheduleAppointmentParams(appointment_id=appointment_id, scheduled_at=new_start, event_id=event_id),
        **core_options(retry),
    )
    if not stored.success:
        workflow.logger.warning(f"Appointment {appointment_id} not moved ({stored.error}), restoring event")
        await _restore_event(event_id, previous_start, retry)
        await notify(lead.phone, RESCHEDULE_FAILED, credentials, retry)
        return None

    retimed = await workflow.execute_activity_method(
        PersistenceActivities.reschedule_follow_ups,
        RescheduleFollowUpsParams(appointment_id=appointment_id, scheduled_at=new_start),
        **core_options(retry),
    )
    workflow.logger.info(f"Re-timed {retimed} pending reminders for appointment {appointment_id}")

    await signal_external(
        demo_reminders_id(appointment_id), "updateSchedule", ScheduleUpdate(scheduled_at=new_start)
    )
    await notify(lead.phone, reschedule_confirmation(lead, new_start), credentials, retry)
    return new_start


async def _apply_cancellation(
    lead: Lead,
    event_id: str,
    appointment_id: str,
    reason: Optional[str],
    credentials: Optional[TenantCredentials],
    retry: RetryPlan,
) -> None:
    """Cancel a booking and undo everything that depended on it."""
    await _cancel_event(event_id, retry)
    await _set_appointment_status(appointment_id, AppointmentStatus.CANCELLED, retry)
    await set_lead_stage(lead.id, LeadStage.QUALIFIED, retry)
    cancelled = await workflow.execute_activity_method(
        PersistenceActivities.cancel_follow_ups,
        CancelFollowUpsParams(lead_id=lead.id, appointment_id=appointment_id),
        **core_options(retry),
    )
    workflow.logger.info(f"Cancelled {cancelled} pending reminders for appointment {appointment_id}")
    await signal_external(demo_reminders_id(appointment_id), "cancelFollowUp")
    await notify(lead.phone, booking_cancelled(reason), credentials, retry)


# =============================================================================
# DemoBookingWorkflow
# =============================================================================

@workflow.defn
class DemoBookingWorkflow:
    """
    Book a demo and keep it up to date until it happens.

    Signals:
    - reschedule(CalSlot): move the demo to another slot
    - cancelBooking: cancel the demo

    Signals are handled one at a time in arrival order.
    """

    def __init__(self) -> None:
        self._status = BookingStatus.CREATING
        self._events: Deque[Tuple[str, Optional[CalSlot]]] = deque()
        self._cancel_requested = False
        self._event_id: Optional[str] = None
        self._appointment_id: Optional[str] = None
        self._scheduled_at: Optional[datetime] = None
        self._reschedules = 0

    @workflow.run
    async def run(self, input: DemoBookingInput) -> BookingWorkflowResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, workflow_id=workflow.info().workflow_id)
        workflow.logger.info("DemoBooking workflow started", **extra)
        lead = input.lead
        retry = input.retry

        if self._cancel_requested:
            workflow.logger.info("Booking cancelled before the event was created", **extra)
            return self._result(BookingStatus.CANCELLED)

        # 1. Calendar event
        try:
            booking = await workflow.execute_activity_method(
                CalendarActivities.create_event,
                CreateEventParams(
                    slot=input.slot,
                    name=lead.name or "Cliente",
                    email=input.email,
                    phone=lead.phone,
                    notes=lead.challenge or "",
                    metadata={
                        "lead_id": input.lead_id,
                        "tenant_id": input.tenant.tenant_id,
                        "workflow_id": workflow.info().workflow_id,
                    },
                ),
                **core_options(retry),
            )
        except ActivityError as e:
            error = error_message(e)
            workflow.logger.error(f"Calendar booking failed: {error}", **extra)
            await notify(lead.phone, BOOKING_FAILED, input.credentials, retry)
            self._status = BookingStatus.FAILED
            raise _booking_failed(f"Calendar booking failed: {error}")

        if not booking.success or not booking.event_id:
            workflow.logger.warning(f"Calendar rejected booking: {booking.error}", **extra)
            await notify(lead.phone, BOOKING_FAILED, input.credentials, retry)
            self._status = BookingStatus.FAILED
            raise _booking_failed(f"Calendar rejected booking: {booking.error}")

        self._event_id = booking.event_id
        if booking.start_at is None:
            workflow.logger.error("Calendar booking has no start time, releasing event", **extra)
            await _cancel_event(self._event_id, retry)
            await notify(lead.phone, BOOKING_FAILED, input.credentials, retry)
            self._status = BookingStatus.FAILED
            raise _booking_failed("Calendar booking has no start time")

        if self._cancel_requested:
            return await self._release(input, extra)

        # 2. Appointment row, at the instant the calendar booked
        self._scheduled_at = aware(booking.start_at)
        try:
            created = await workflow.execute_activity_method(
                PersistenceActivities.create_appointment,
                CreateAppointmentParams(
                    lead_id=input.lead_id, scheduled_at=self._scheduled_at, event_id=self._event_id
                ),
                **core_options(retry),
            )
        except ActivityError as e:
            created = None
            error = error_message(e)
        else:
            error = created.error
        if created is None or not created.success:
            workflow.logger.error(f"Could not store appointment, releasing event: {error}", **extra)
            await _cancel_event(self._event_id, retry)
            await notify(lead.phone, BOOKING_FAILED, input.credentials, retry)
            self._status = BookingStatus.FAILED
            raise _booking_failed(f"Could not store appointment: {error}")
        self._appointment_id = created.id

        if self._cancel_requested:
            return await self._release(input, extra)

        # 3. Lead stage
        try:
            advanced = await set_lead_stage(input.lead_id, LeadStage.DEMO_SCHEDULED, retry)
            error = "lead stage update rejected"
        except ActivityError as e:
            advanced = False
            error = error_message(e)
        if not advanced:
            workflow.logger.error(f"Could not advance lead stage, compensating: {error}", **extra)
            await _cancel_event(self._event_id, retry)
            await _set_appointment_status(self._appointment_id, AppointmentStatus.CANCELLED, retry)
            await notify(lead.phone, BOOKING_FAILED, input.credentials, retry)
            self._status = BookingStatus.FAILED
            raise _booking_failed(f"Could not advance lead stage: {error}")

        if self._cancel_requested:
            return await self._release(input, extra, revert_stage=True)

        self._status = BookingStatus.SCHEDULED
        workflow.logger.info(f"Demo booked for {self._scheduled_at.isoformat()}", **extra)

        # 4. Older pending follow-ups no longer apply
        await workflow.execute_activity_method(
            PersistenceActivities.cancel_follow_ups,
            CancelFollowUpsParams(lead_id=input.lead_id),
            **core_options(retry),
        )
        if self._cancel_requested:
            return await self._release(input, extra, revert_stage=True)

        await notify(
            lead.phone, booking_confirmation(lead, self._scheduled_at, booking.meeting_url), input.credentials, retry
        )
        try:
            await workflow.execute_activity_method(
                WhatsAppActivities.send_confirmation_buttons,
                SendButtonsParams(phone=lead.phone, body_text=CONFIRM_BUTTONS_TEXT, credentials=input.credentials),
                **core_options(retry),
            )
        except ActivityError as e:
            workflow.logger.warning(f"Confirmation buttons not sent: {error_message(e)}", **extra)

        await self._start_reminders(input)

        # 5. Stay open until the demo is over
        while True:
            remaining = demo_end(self._scheduled_at) - workflow.now()
            if remaining.total_seconds() <= 0 and not self._events:
                break
            if not self._events:
                try:
                    await workflow.wait_condition(lambda: bool(self._events), timeout=remaining)
                except asyncio.TimeoutError:
                    break

            kind, slot = self._events.popleft()
            if kind == "cancel":
                await _apply_cancellation(lead, self._event_id, self._appointment_id, None, input.credentials, retry)
                workflow.logger.info("Booking cancelled by signal", **extra)
                return self._result(BookingStatus.CANCELLED)

            new_start = await _apply_reschedule(
                lead, self._event_id, self._appointment_id, slot, self._scheduled_at, input.credentials, retry
            )
            if new_start is not None:
                self._scheduled_at = new_start
                self._reschedules += 1
                workflow.logger.info(f"Demo moved to {new_start.isoformat()}", **extra)

        workflow.logger.info("Demo time passed, booking workflow completed", **extra)
        return self._result(BookingStatus.COMPLETED, meeting_url=booking.meeting_url)

    async def _release(
        self, input: DemoBookingInput, extra: Dict[str, Any], revert_stage: bool = False
    ) -> BookingWorkflowResult:
        """Undo an unconfirmed booking after a cancel signal."""
        workflow.logger.info("Cancel arrived while booking, releasing it", **extra)
        await _cancel_event(self._event_id, input.retry)
        if self._appointment_id:
            await _set_appointment_status(self._appointment_id, AppointmentStatus.CANCELLED, input.retry)
        if revert_stage:
            await set_lead_stage(input.lead_id, input.lead.stage, input.retry)
        return self._result(BookingStatus.CANCELLED)

    async def _start_reminders(self, input: DemoBookingInput) -> None:
        child_input = DemoRemindersInput(
            tenant=input.tenant,
            lead_id=input.lead_id,
            lead=input.lead,
            credentials=input.credentials,
            appointment_id=self._appointment_id,
            scheduled_at=self._scheduled_at,
            retry=input.retry,
        )
        try:
            await workflow.start_child_workflow(
                DemoRemindersWorkflow.run,
                child_input,
                id=demo_reminders_id(self._appointment_id),
                task_queue=workflow.info().task_queue,
                parent_close_policy=workflow.ParentClosePolicy.ABANDON,
            )
        except WorkflowAlreadyStartedError:
            workflow.logger.info(f"Reminders for appointment {self._appointment_id} already running")

    def _result(self, status: BookingStatus, meeting_url: Optional[str] = None) -> BookingWorkflowResult:
        self._status = status
        return BookingWorkflowResult(
            success=status in (BookingStatus.SCHEDULED, BookingStatus.COMPLETED),
            status=status,
            event_id=self._event_id,
            appointment_id=self._appointment_id,
            meeting_url=meeting_url,
            scheduled_at=self._scheduled_at,
            reschedules=self._reschedules,
        )

    @workflow.signal(name="reschedule")
    async def reschedule(self, slot: CalSlot) -> None:
        self._events.append(("reschedule", slot))

    @workflow.signal(name="cancelBooking")
    async def cancel_booking(self) -> None:
        self._cancel_requested = True
        self._events.append(("cancel", None))

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "event_id": self._event_id,
            "appointment_id": self._appointment_id,
            "scheduled_at": self._scheduled_at.isoformat() if self._scheduled_at else None,
            "reschedules": self._reschedules,
            "pending_signals": len(self._events),
        }


# =============================================================================
# Standalone variants
# =============================================================================

@workflow.defn
class RescheduleWorkflow:
    """Move a booking whose booking workflow has already closed."""

    def __init__(self) -> None:
        self._status = BookingStatus.CREATING

    @workflow.run
    async def run(self, input: RescheduleInput) -> BookingWorkflowResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, appointment_id=input.appointment_id)
        workflow.logger.info("Reschedule workflow started", **extra)

        appointment = await workflow.execute_activity_method(
            PersistenceActivities.get_appointment, input.appointment_id, **core_options(input.retry)
        )
        if appointment is None:
            workflow.logger.warning("Appointment to reschedule not found", **extra)
            return self._failed(input, "appointment not found")

        new_start = await _apply_reschedule(
            input.lead,
            input.event_id,
            input.appointment_id,
            input.new_slot,
            aware(appointment.scheduled_at),
            input.credentials,
            input.retry,
        )
        if new_start is None:
            return self._failed(input, "booking could not be moved to the new slot")

        self._status = BookingStatus.SCHEDULED
        return BookingWorkflowResult(
            success=True,
            status=self._status,
            event_id=input.event_id,
            appointment_id=input.appointment_id,
            scheduled_at=new_start,
            reschedules=1,
        )

    def _failed(self, input: RescheduleInput, error: str) -> BookingWorkflowResult:
        self._status = BookingStatus.FAILED
        return BookingWorkflowResult(
            success=False,
            status=self._status,
            event_id=input.event_id,
            appointment_id=input.appointment_id,
            error=error,
        )

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {"status": self._status.value}


@workflow.defn
class CancelBookingWorkflow:
    """Cancel a booking whose booking workflow has already closed."""

    def __init__(self) -> None:
        self._status = BookingStatus.SCHEDULED

    @workflow.run
    async def run(self, input: CancelBookingInput) -> BookingWorkflowResult:
        extra = log_extra(input.tenant.tenant_id, input.lead_id, appointment_id=input.appointment_id)
        workflow.logger.info("CancelBooking workflow started", **extra)

        await _apply_cancellation(
            input.lead, input.event_id, input.appointment_id, input.reason, input.credentials, input.retry
        )
        self._status = BookingStatus.CANCELLED
        return BookingWorkflowResult(
            success=True,
            status=self._status,
            event_id=input.event_id,
            appointment_id=input.appointment_id,
        )

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {"status": self._status.value}


__all__ = ["DemoBookingWorkflow", "RescheduleWorkflow", "CancelBookingWorkflow"]
