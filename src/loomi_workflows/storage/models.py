"""
SQLAlchemy models for the Loomi persistence store.

Tables: leads, appointments, messages, follow_ups, lead_memory.

Invariants:
- Leads are never deleted, only transitioned between stages.
- At most one `scheduled` appointment per lead.
- A follow-up leaves `pending` exactly once.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

from ..models import (
    Appointment,
    AppointmentStatus,
    FollowUpRecord,
    FollowUpStatus,
    FollowUpType,
    Lead,
    LeadStage,
)

Base = declarative_base()


def generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class LeadModel(Base):
    __tablename__ = "leads"

    id = Column(String(64), primary_key=True, default=generate_id)
    tenant_id = Column(String(64), nullable=True, index=True)
    phone = Column(String(32), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    email = Column(String(200), nullable=True)
    company = Column(String(200), nullable=True)
    industry = Column(String(100), nullable=True)
    challenge = Column(Text, nullable=True)
    stage = Column(
        Enum(LeadStage, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=LeadStage.NEW,
    )
    last_interaction = Column(DateTime(timezone=True), nullable=True, index=True)
    stripe_customer_id = Column(String(100), nullable=True)
    subscription_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_lead(self) -> Lead:
        return Lead(
            id=self.id,
            phone=self.phone,
            name=self.name,
            email=self.email,
            company=self.company,
            industry=self.industry,
            challenge=self.challenge,
            stage=self.stage,
            last_interaction=as_utc(self.last_interaction),
            tenant_id=self.tenant_id,
            stripe_customer_id=self.stripe_customer_id,
            subscription_id=self.subscription_id,
        )


class AppointmentModel(Base):
    __tablename__ = "appointments"

    id = Column(String(64), primary_key=True, default=generate_id)
    lead_id = Column(String(64), ForeignKey("leads.id"), nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    event_id = Column(String(100), nullable=True)
    status = Column(
        Enum(AppointmentStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # At most one scheduled appointment per lead
        Index(
            "uq_appointments_lead_scheduled",
            "lead_id",
            unique=True,
            sqlite_where=text("status = 'scheduled'"),
            postgresql_where=text("status = 'scheduled'"),
        ),
    )

    def to_appointment(self) -> Appointment:
        return Appointment(
            id=self.id,
            lead_id=self.lead_id,
            scheduled_at=as_utc(self.scheduled_at),
            event_id=self.event_id,
            status=self.status,
        )


class MessageModel(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, default=generate_id)
    conversation_id = Column(String(64), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class FollowUpModel(Base):
    __tablename__ = "follow_ups"

    id = Column(String(64), primary_key=True, default=generate_id)
    lead_id = Column(String(64), ForeignKey("leads.id"), nullable=False, index=True)
    appointment_id = Column(String(64), ForeignKey("appointments.id"), nullable=True, index=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    type = Column(
        Enum(FollowUpType, values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    message = Column(Text, nullable=False, default="")
    status = Column(
        Enum(FollowUpStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=FollowUpStatus.PENDING,
        index=True,
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    workflow_id = Column(String(200), nullable=True, index=True)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # One record per follow-up type and workflow; NULL workflow ids never collide
        UniqueConstraint("workflow_id", "type", name="uq_follow_ups_workflow_type"),
    )

    def to_record(self) -> FollowUpRecord:
        return FollowUpRecord(
            id=self.id,
            lead_id=self.lead_id,
            appointment_id=self.appointment_id,
            scheduled_for=as_utc(self.scheduled_for),
            type=self.type,
            message=self.message,
            status=self.status,
            sent_at=as_utc(self.sent_at),
            attempt=self.attempt,
            workflow_id=self.workflow_id,
            metadata=self.extra or {},
        )


class LeadMemoryModel(Base):
    __tablename__ = "lead_memory"

    lead_id = Column(String(64), ForeignKey("leads.id"), primary_key=True)
    memory = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
