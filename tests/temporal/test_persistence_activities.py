"""
Tests for the persistence activities on a throwaway SQLite database.
"""

from datetime import datetime, timedelta, timezone

from loomi_workflows.models import (
    AppointmentStatus,
    AppointmentStatusParams,
    CancelFollowUpsParams,
    ColdLeadsParams,
    CreateAppointmentParams,
    CreateFollowUpParams,
    FollowUpStatus,
    FollowUpType,
    LeadStage,
    PendingFollowUpsParams,
    RecentMessagesParams,
    RescheduleAppointmentParams,
    RescheduleFollowUpsParams,
    SaveMemoryParams,
    SaveMessageParams,
    UpdateLeadParams,
    UpdateStageParams,
)


def now() -> datetime:
    return datetime.now(timezone.utc)


def follow_up(store, lead_id, type=FollowUpType.SAID_LATER, in_minutes=60, **fields) -> str:
    params = CreateFollowUpParams(
        lead_id=lead_id,
        type=type,
        scheduled_for=now() + timedelta(minutes=in_minutes),
        **fields,
    )
    return store.create_follow_up(params).id


class TestLeads:

    def test_get_lead(self, store, make_lead):
        lead = make_lead(email="ana@example.com")

        loaded = store.get_lead(lead.id)

        assert loaded.phone == "5215512345678"
        assert loaded.email == "ana@example.com"
        assert store.get_lead("missing") is None

    def test_get_lead_by_phone(self, store, make_lead):
        lead = make_lead(phone="5210000000001")

        assert store.get_lead_by_phone("5210000000001").id == lead.id
        assert store.get_lead_by_phone("000") is None

    def test_update_stage(self, store, make_lead):
        lead = make_lead()

        result = store.update_lead_stage(UpdateStageParams(lead_id=lead.id, stage=LeadStage.DEMO_SCHEDULED))

        assert result.success is True
        assert store.get_lead(lead.id).stage is LeadStage.DEMO_SCHEDULED

    def test_update_stage_missing_lead(self, store):
        result = store.update_lead_stage(UpdateStageParams(lead_id="missing", stage=LeadStage.WON))

        assert result.success is False

    def test_update_lead_ignores_unset_fields(self, store, make_lead):
        lead = make_lead(email="old@example.com")

        store.update_lead(UpdateLeadParams(lead_id=lead.id, stripe_customer_id="cus_1"))

        loaded = store.get_lead(lead.id)
        assert loaded.stripe_customer_id == "cus_1"
        assert loaded.email == "old@example.com"

    def test_cold_leads(self, store, make_lead):
        cold = make_lead(last_interaction=now() - timedelta(hours=30))
        make_lead(last_interaction=now() - timedelta(hours=2))
        make_lead(stage=LeadStage.WON, last_interaction=now() - timedelta(hours=40))

        leads = store.get_cold_leads(ColdLeadsParams(hours_inactive=24))

        assert [lead.id for lead in leads] == [cold.id]


class TestMessagesAndMemory:

    def test_recent_messages_are_chronological(self, store, make_lead):
        lead = make_lead()
        for i in range(5):
            store.save_message(SaveMessageParams(conversation_id="conv-1", role="user", content=f"m{i}", lead_id=lead.id))

        messages = store.get_recent_messages(RecentMessagesParams(conversation_id="conv-1", limit=3))

        assert [m.content for m in messages] == ["m2", "m3", "m4"]
        assert store.get_lead(lead.id).last_interaction is not None

    def test_memory_upsert(self, store, make_lead):
        lead = make_lead()

        store.save_lead_memory(SaveMemoryParams(lead_id=lead.id, memory="primera"))
        store.save_lead_memory(SaveMemoryParams(lead_id=lead.id, memory="segunda"))

        assert store.get_lead_memory(lead.id) == "segunda"


class TestAppointments:

    def test_one_scheduled_appointment_per_lead(self, store, make_lead):
        lead = make_lead()
        at = now() + timedelta(days=1)

        first = store.create_appointment(CreateAppointmentParams(lead_id=lead.id, scheduled_at=at, event_id="e1"))
        second = store.create_appointment(CreateAppointmentParams(lead_id=lead.id, scheduled_at=at, event_id="e2"))

        assert first.success is True
        assert second.success is False
        assert first.id in second.error

    def test_new_appointment_after_cancellation(self, store, make_lead):
        lead = make_lead()
        at = now() + timedelta(days=1)
        first = store.create_appointment(CreateAppointmentParams(lead_id=lead.id, scheduled_at=at))

        store.update_appointment_status(
            AppointmentStatusParams(appointment_id=first.id, status=AppointmentStatus.CANCELLED)
        )
        second = store.create_appointment(CreateAppointmentParams(lead_id=lead.id, scheduled_at=at))

        assert second.success is True
        assert store.get_active_appointment(lead.id).id == second.id

    def test_complete_only_once(self, store, make_lead, make_appointment):
        lead = make_lead()
        appointment = make_appointment(lead.id, now() + timedelta(hours=1))

        assert store.complete_appointment(appointment.id).transitioned is True
        assert store.complete_appointment(appointment.id).transitioned is False
        assert store.get_appointment(appointment.id).status is AppointmentStatus.COMPLETED

    def test_reschedule_keeps_id(self, store, make_lead, make_appointment):
        lead = make_lead()
        appointment = make_appointment(lead.id, now() + timedelta(hours=1))
        new_time = (now() + timedelta(days=3)).replace(microsecond=0)

        result = store.reschedule_appointment(
            RescheduleAppointmentParams(appointment_id=appointment.id, scheduled_at=new_time, event_id="evt-2")
        )

        assert result.id == appointment.id
        loaded = store.get_appointment(appointment.id)
        assert loaded.scheduled_at == new_time
        assert loaded.event_id == "evt-2"

    def test_reschedule_cancelled_appointment_rejected(self, store, make_lead, make_appointment):
        lead = make_lead()
        appointment = make_appointment(lead.id, now() + timedelta(hours=1))
        store.update_appointment_status(
            AppointmentStatusParams(appointment_id=appointment.id, status=AppointmentStatus.CANCELLED)
        )

        result = store.reschedule_appointment(
            RescheduleAppointmentParams(appointment_id=appointment.id, scheduled_at=now())
        )

        assert result.success is False


class TestFollowUps:

    def test_attempt_counts_per_type(self, store, make_lead):
        lead = make_lead()
        follow_up(store, lead.id)
        second = follow_up(store, lead.id)

        assert store.get_follow_up(second).attempt == 2

    def test_retried_create_returns_same_record(self, store, make_lead, follow_ups_for):
        """A retry after a lost response must not schedule the message twice."""
        lead = make_lead()

        first = follow_up(store, lead.id, workflow_id="followup-said_later-x")
        second = follow_up(store, lead.id, workflow_id="followup-said_later-x")

        assert first == second
        assert len(follow_ups_for(lead.id)) == 1

    def test_same_workflow_different_types_are_separate(self, store, make_lead):
        lead = make_lead()

        day_before = follow_up(store, lead.id, FollowUpType.PRE_DEMO_24H, workflow_id="demo-reminders-a")
        hour_before = follow_up(store, lead.id, FollowUpType.PRE_DEMO_REMINDER, workflow_id="demo-reminders-a")

        assert day_before != hour_before

    def test_records_without_workflow_are_not_merged(self, store, make_lead):
        lead = make_lead()

        assert follow_up(store, lead.id) != follow_up(store, lead.id)

    def test_leaves_pending_exactly_once(self, store, make_lead):
        lead = make_lead()
        record_id = follow_up(store, lead.id)

        assert store.mark_follow_up_sent(record_id).transitioned is True
        assert store.mark_follow_up_sent(record_id).transitioned is False
        assert store.cancel_follow_up(record_id).transitioned is False
        record = store.get_follow_up(record_id)
        assert record.status is FollowUpStatus.SENT
        assert record.sent_at is not None

    def test_cancelled_record_cannot_be_sent(self, store, make_lead):
        lead = make_lead()
        record_id = follow_up(store, lead.id)

        store.cancel_follow_up(record_id)

        assert store.mark_follow_up_sent(record_id).transitioned is False

    def test_sent_record_can_be_marked_failed(self, store, make_lead):
        lead = make_lead()
        record_id = follow_up(store, lead.id)
        store.mark_follow_up_sent(record_id)

        assert store.mark_follow_up_failed(record_id).transitioned is True
        assert store.get_follow_up(record_id).status is FollowUpStatus.FAILED

    def test_cancel_follow_ups_filters(self, store, make_lead, make_appointment):
        lead = make_lead()
        appointment = make_appointment(lead.id, now() + timedelta(days=2))
        demo = follow_up(store, lead.id, FollowUpType.PRE_DEMO_24H, appointment_id=appointment.id)
        later = follow_up(store, lead.id, FollowUpType.SAID_LATER)
        own = follow_up(store, lead.id, FollowUpType.REENGAGEMENT_2, workflow_id="reengagement-x")

        cancelled = store.cancel_follow_ups(
            CancelFollowUpsParams(lead_id=lead.id, appointment_id=appointment.id)
        )
        assert cancelled == 1
        assert store.get_follow_up(demo).status is FollowUpStatus.CANCELLED

        cancelled = store.cancel_follow_ups(
            CancelFollowUpsParams(lead_id=lead.id, exclude_workflow_id="reengagement-x")
        )
        assert cancelled == 1
        assert store.get_follow_up(later).status is FollowUpStatus.CANCELLED
        assert store.get_follow_up(own).status is FollowUpStatus.PENDING

    def test_cancel_follow_ups_by_type(self, store, make_lead):
        lead = make_lead()
        said_later = follow_up(store, lead.id, FollowUpType.SAID_LATER)
        no_show = follow_up(store, lead.id, FollowUpType.NO_SHOW_FOLLOWUP)

        store.cancel_follow_ups(CancelFollowUpsParams(lead_id=lead.id, types=[FollowUpType.NO_SHOW_FOLLOWUP]))

        assert store.get_follow_up(said_later).status is FollowUpStatus.PENDING
        assert store.get_follow_up(no_show).status is FollowUpStatus.CANCELLED

    def test_reschedule_follow_ups_moves_demo_reminders_only(self, store, make_lead, make_appointment):
        lead = make_lead()
        demo_at = now() + timedelta(days=2)
        appointment = make_appointment(lead.id, demo_at)
        reminder = follow_up(store, lead.id, FollowUpType.PRE_DEMO_REMINDER, appointment_id=appointment.id)
        unrelated = follow_up(store, lead.id, FollowUpType.SAID_LATER, appointment_id=appointment.id)
        before = store.get_follow_up(unrelated).scheduled_for
        new_demo = (now() + timedelta(days=5)).replace(microsecond=0)

        moved = store.reschedule_follow_ups(
            RescheduleFollowUpsParams(appointment_id=appointment.id, scheduled_at=new_demo)
        )

        assert moved == 1
        assert store.get_follow_up(reminder).scheduled_for == new_demo - timedelta(minutes=30)
        assert store.get_follow_up(unrelated).scheduled_for == before

    def test_count_excludes_cancelled(self, store, make_lead):
        lead = make_lead()
        follow_up(store, lead.id)
        cancelled = follow_up(store, lead.id)
        store.cancel_follow_up(cancelled)

        assert store.count_follow_ups(lead.id) == 1

    def test_pending_window(self, store, make_lead):
        lead = make_lead()
        soon = follow_up(store, lead.id, in_minutes=2)
        overdue = follow_up(store, lead.id, in_minutes=-30)
        follow_up(store, lead.id, in_minutes=120)
        follow_up(store, lead.id, in_minutes=-60 * 24 * 8)

        records = store.get_pending_follow_ups(PendingFollowUpsParams(window_minutes=5))

        assert [r.id for r in records] == [overdue, soon]
