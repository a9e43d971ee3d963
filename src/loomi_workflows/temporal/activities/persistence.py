"""
Persistence activities (SQLAlchemy).

Every read and write a workflow needs goes through here; workflow code
never touches the database. Activities are synchronous and run on the
worker's thread pool, one session per call.

Follow-up records leave `pending` through conditional updates
(`... WHERE status = 'pending'`), so a retried or replayed activity can
never send or cancel the same record twice.
"""

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from temporalio import activity

from ...errors import TransientAPIError
from ...models import (
    CLOSED_STAGES,
    Appointment,
    AppointmentStatus,
    AppointmentStatusParams,
    CancelFollowUpsParams,
    ChatMessage,
    ColdLeadsParams,
    CreateAppointmentParams,
    CreateFollowUpParams,
    FollowUpRecord,
    FollowUpStatus,
    Lead,
    OperationResult,
    PendingFollowUpsParams,
    RecentMessagesParams,
    RescheduleAppointmentParams,
    RescheduleFollowUpsParams,
    SaveMemoryParams,
    SaveMessageParams,
    TransitionResult,
    UpdateLeadParams,
    UpdateStageParams,
)
from ...storage.models import (
    AppointmentModel,
    FollowUpModel,
    LeadMemoryModel,
    LeadModel,
    MessageModel,
    as_utc,
    utcnow,
)
from ..messages import DEMO_OFFSETS, follow_up_fire_time

logger = logging.getLogger(__name__)

# Pending follow-ups older than this are considered abandoned
PENDING_LOOKBACK = timedelta(days=7)


class PersistenceActivities:
    """CRUD for leads, messages, appointments, follow-ups and lead memory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise TransientAPIError("database", str(e.orig or e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Leads
    # =========================================================================

    @activity.defn(name="get_lead")
    def get_lead(self, lead_id: str) -> Optional[Lead]:
        with self._session() as session:
            row = session.get(LeadModel, lead_id)
            return row.to_lead() if row else None

    @activity.defn(name="get_lead_by_phone")
    def get_lead_by_phone(self, phone: str) -> Optional[Lead]:
        with self._session() as session:
            row = session.scalars(
                select(LeadModel).where(LeadModel.phone == phone).order_by(LeadModel.created_at.desc())
            ).first()
            return row.to_lead() if row else None

    @activity.defn(name="update_lead_stage")
    def update_lead_stage(self, params: UpdateStageParams) -> OperationResult:
        with self._session() as session:
            row = session.get(LeadModel, params.lead_id)
            if row is None:
                return OperationResult(success=False, error=f"Lead {params.lead_id} not found")
            previous = row.stage
            row.stage = params.stage
        logger.info(f"Lead {params.lead_id} stage: {previous.value} -> {params.stage.value}")
        return OperationResult(success=True, id=params.lead_id)

    @activity.defn(name="update_lead")
    def update_lead(self, params: UpdateLeadParams) -> OperationResult:
        """Set the given fields; None means leave unchanged."""
        changes = params.model_dump(exclude={"lead_id"}, exclude_none=True)
        with self._session() as session:
            row = session.get(LeadModel, params.lead_id)
            if row is None:
                return OperationResult(success=False, error=f"Lead {params.lead_id} not found")
            for key, value in changes.items():
                setattr(row, key, value)
        return OperationResult(success=True, id=params.lead_id)

    @activity.defn(name="get_cold_leads")
    def get_cold_leads(self, params: ColdLeadsParams) -> List[Lead]:
        """Open leads silent for at least `hours_inactive`, oldest first."""
        cutoff = utcnow() - timedelta(hours=params.hours_inactive)
        with self._session() as session:
            rows = session.scalars(
                select(LeadModel)
                .where(LeadModel.last_interaction < cutoff)
                .where(LeadModel.stage.not_in(list(CLOSED_STAGES)))
                .order_by(LeadModel.last_interaction.asc())
                .limit(params.limit)
            ).all()
            return [row.to_lead() for row in rows]

    # =========================================================================
    # Messages
    # =========================================================================

    @activity.defn(name="save_message")
    def save_message(self, params: SaveMessageParams) -> OperationResult:
        with self._session() as session:
            message = MessageModel(
                conversation_id=params.conversation_id,
                role=params.role,
                content=params.content,
            )
            session.add(message)
            if params.lead_id:
                lead = session.get(LeadModel, params.lead_id)
                if lead is not None:
                    lead.last_interaction = utcnow()
            session.flush()
            return OperationResult(success=True, id=message.id)

    @activity.defn(name="get_recent_messages")
    def get_recent_messages(self, params: RecentMessagesParams) -> List[ChatMessage]:
        """The last `limit` messages of a conversation, in chronological order."""
        with self._session() as session:
            rows = session.scalars(
                select(MessageModel)
                .where(MessageModel.conversation_id == params.conversation_id)
                .order_by(MessageModel.created_at.desc())
                .limit(params.limit)
            ).all()
            return [
                ChatMessage(role=row.role, content=row.content, created_at=row.created_at)
                for row in reversed(rows)
            ]

    # =========================================================================
    # Appointments
    # =========================================================================

    @activity.defn(name="create_appointment")
    def create_appointment(self, params: CreateAppointmentParams) -> OperationResult:
        """Create a scheduled appointment; fails if the lead already has one."""
        try:
            with self._session() as session:
                existing = session.scalars(
                    select(AppointmentModel.id)
                    .where(AppointmentModel.lead_id == params.lead_id)
                    .where(AppointmentModel.status == AppointmentStatus.SCHEDULED)
                ).first()
                if existing:
                    return OperationResult(
                        success=False,
                        error=f"Lead {params.lead_id} already has scheduled appointment {existing}",
                    )
                appointment = AppointmentModel(
                    lead_id=params.lead_id,
                    scheduled_at=as_utc(params.scheduled_at),
                    event_id=params.event_id,
                    status=AppointmentStatus.SCHEDULED,
                )
                session.add(appointment)
                session.flush()
                appointment_id = appointment.id
        except IntegrityError as e:
            return OperationResult(success=False, error=str(e.orig or e))
        return OperationResult(success=True, id=appointment_id)

    @activity.defn(name="get_active_appointment")
    def get_active_appointment(self, lead_id: str) -> Optional[Appointment]:
        with self._session() as session:
            row = session.scalars(
                select(AppointmentModel)
                .where(AppointmentModel.lead_id == lead_id)
                .where(AppointmentModel.status == AppointmentStatus.SCHEDULED)
                .order_by(AppointmentModel.scheduled_at.asc())
            ).first()
            return row.to_appointment() if row else None

    @activity.defn(name="get_appointment")
    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        with self._session() as session:
            row = session.get(AppointmentModel, appointment_id)
            return row.to_appointment() if row else None

    @activity.defn(name="update_appointment_status")
    def update_appointment_status(self, params: AppointmentStatusParams) -> OperationResult:
        with self._session() as session:
            row = session.get(AppointmentModel, params.appointment_id)
            if row is None:
                return OperationResult(success=False, error=f"Appointment {params.appointment_id} not found")
            row.status = params.status
        return OperationResult(success=True, id=params.appointment_id)

    @activity.defn(name="complete_appointment")
    def complete_appointment(self, appointment_id: str) -> TransitionResult:
        """scheduled -> completed, only if still scheduled."""
        with self._session() as session:
            result = session.execute(
                update(AppointmentModel)
                .where(AppointmentModel.id == appointment_id)
                .where(AppointmentModel.status == AppointmentStatus.SCHEDULED)
                .values(status=AppointmentStatus.COMPLETED)
            )
            return TransitionResult(transitioned=result.rowcount == 1)

    @activity.defn(name="reschedule_appointment")
    def reschedule_appointment(self, params: RescheduleAppointmentParams) -> OperationResult:
        """Move the appointment in place, keeping its id."""
        with self._session() as session:
            row = session.get(AppointmentModel, params.appointment_id)
            if row is None:
                return OperationResult(success=False, error=f"Appointment {params.appointment_id} not found")
            if row.status != AppointmentStatus.SCHEDULED:
                return OperationResult(success=False, error=f"Appointment is {row.status.value}")
            row.scheduled_at = as_utc(params.scheduled_at)
            if params.event_id:
                row.event_id = params.event_id
        return OperationResult(success=True, id=params.appointment_id)

    # =========================================================================
    # Lead memory
    # =========================================================================

    @activity.defn(name="get_lead_memory")
    def get_lead_memory(self, lead_id: str) -> Optional[str]:
        with self._session() as session:
            row = session.get(LeadMemoryModel, lead_id)
            return row.memory if row else None

    @activity.defn(name="save_lead_memory")
    def save_lead_memory(self, params: SaveMemoryParams) -> OperationResult:
        with self._session() as session:
            row = session.get(LeadMemoryModel, params.lead_id)
            if row is None:
                session.add(LeadMemoryModel(lead_id=params.lead_id, memory=params.memory))
            else:
                row.memory = params.memory
                row.updated_at = utcnow()
        return OperationResult(success=True, id=params.lead_id)

    # =========================================================================
    # Follow-ups
    # =========================================================================

    def _follow_up_id(self, params: CreateFollowUpParams) -> Optional[str]:
        if not params.workflow_id:
            return None
        with self._session() as session:
            return session.scalars(
                select(FollowUpModel.id)
                .where(FollowUpModel.workflow_id == params.workflow_id)
                .where(FollowUpModel.type == params.type)
            ).first()

    @activity.defn(name="create_follow_up")
    def create_follow_up(self, params: CreateFollowUpParams) -> OperationResult:
        """
        Create a pending follow-up record.

        Records are keyed by (workflow_id, type), so a retried call returns the
        record an earlier attempt created.
        """
        existing = self._follow_up_id(params)
        if existing:
            return OperationResult(success=True, id=existing)
        try:
            with self._session() as session:
                attempt = session.scalar(
                    select(func.count(FollowUpModel.id))
                    .where(FollowUpModel.lead_id == params.lead_id)
                    .where(FollowUpModel.type == params.type)
                ) or 0
                row = FollowUpModel(
                    lead_id=params.lead_id,
                    appointment_id=params.appointment_id,
                    scheduled_for=as_utc(params.scheduled_for),
                    type=params.type,
                    message=params.message,
                    status=FollowUpStatus.PENDING,
                    attempt=attempt + 1,
                    workflow_id=params.workflow_id,
                    extra=params.metadata,
                )
                session.add(row)
                session.flush()
                follow_up_id = row.id
        except IntegrityError:
            existing = self._follow_up_id(params)
            if existing is None:
                raise
            return OperationResult(success=True, id=existing)
        return OperationResult(success=True, id=follow_up_id)

    def _leave_pending(self, follow_up_id: str, status: FollowUpStatus, **values) -> TransitionResult:
        with self._session() as session:
            result = session.execute(
                update(FollowUpModel)
                .where(FollowUpModel.id == follow_up_id)
                .where(FollowUpModel.status == FollowUpStatus.PENDING)
                .values(status=status, **values)
            )
            return TransitionResult(transitioned=result.rowcount == 1)

    @activity.defn(name="mark_follow_up_sent")
    def mark_follow_up_sent(self, follow_up_id: str) -> TransitionResult:
        """pending -> sent. `transitioned` is False if someone else got there first."""
        return self._leave_pending(follow_up_id, FollowUpStatus.SENT, sent_at=utcnow())

    @activity.defn(name="mark_follow_up_failed")
    def mark_follow_up_failed(self, follow_up_id: str) -> TransitionResult:
        """sent -> failed, for a claimed record whose message could not be delivered."""
        with self._session() as session:
            result = session.execute(
                update(FollowUpModel)
                .where(FollowUpModel.id == follow_up_id)
                .where(FollowUpModel.status.in_([FollowUpStatus.PENDING, FollowUpStatus.SENT]))
                .values(status=FollowUpStatus.FAILED)
            )
            return TransitionResult(transitioned=result.rowcount == 1)

    @activity.defn(name="cancel_follow_up")
    def cancel_follow_up(self, follow_up_id: str) -> TransitionResult:
        return self._leave_pending(follow_up_id, FollowUpStatus.CANCELLED)

    @activity.defn(name="cancel_follow_ups")
    def cancel_follow_ups(self, params: CancelFollowUpsParams) -> int:
        """Cancel pending follow-ups of a lead, optionally narrowed by appointment and type."""
        stmt = (
            update(FollowUpModel)
            .where(FollowUpModel.lead_id == params.lead_id)
            .where(FollowUpModel.status == FollowUpStatus.PENDING)
        )
        if params.appointment_id:
            stmt = stmt.where(FollowUpModel.appointment_id == params.appointment_id)
        if params.types:
            stmt = stmt.where(FollowUpModel.type.in_(params.types))
        if params.exclude_workflow_id:
            stmt = stmt.where(
                (FollowUpModel.workflow_id.is_(None)) | (FollowUpModel.workflow_id != params.exclude_workflow_id)
            )
        with self._session() as session:
            result = session.execute(stmt.values(status=FollowUpStatus.CANCELLED))
            cancelled = result.rowcount
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending follow-ups for lead {params.lead_id}")
        return cancelled

    @activity.defn(name="reschedule_follow_ups")
    def reschedule_follow_ups(self, params: RescheduleFollowUpsParams) -> int:
        """Re-time the pending demo reminders of an appointment to a new demo start."""
        now = utcnow()
        moved = 0
        with self._session() as session:
            rows = session.scalars(
                select(FollowUpModel)
                .where(FollowUpModel.appointment_id == params.appointment_id)
                .where(FollowUpModel.status == FollowUpStatus.PENDING)
                .where(FollowUpModel.type.in_(list(DEMO_OFFSETS)))
            ).all()
            for row in rows:
                row.scheduled_for = follow_up_fire_time(row.type, now, as_utc(params.scheduled_at))
                moved += 1
        return moved

    @activity.defn(name="count_follow_ups")
    def count_follow_ups(self, lead_id: str) -> int:
        """Follow-ups ever scheduled for a lead, cancelled ones excluded."""
        with self._session() as session:
            return session.scalar(
                select(func.count(FollowUpModel.id))
                .where(FollowUpModel.lead_id == lead_id)
                .where(FollowUpModel.status != FollowUpStatus.CANCELLED)
            ) or 0

    @activity.defn(name="get_pending_follow_ups")
    def get_pending_follow_ups(self, params: PendingFollowUpsParams) -> List[FollowUpRecord]:
        """Pending follow-ups due within the next `window_minutes`, soonest first."""
        now = utcnow()
        window_end = now + timedelta(minutes=params.window_minutes)
        with self._session() as session:
            rows = session.scalars(
                select(FollowUpModel)
                .where(FollowUpModel.status == FollowUpStatus.PENDING)
                .where(FollowUpModel.scheduled_for <= window_end)
                .where(FollowUpModel.scheduled_for >= now - PENDING_LOOKBACK)
                .order_by(FollowUpModel.scheduled_for.asc())
                .limit(params.limit)
            ).all()
            return [row.to_record() for row in rows]

    @activity.defn(name="get_follow_up")
    def get_follow_up(self, follow_up_id: str) -> Optional[FollowUpRecord]:
        with self._session() as session:
            row = session.get(FollowUpModel, follow_up_id)
            return row.to_record() if row else None
