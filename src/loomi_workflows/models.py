"""
Pydantic models for Loomi workflows and activities.

Everything that crosses the Temporal boundary (workflow inputs, activity
parameters, results, signal payloads) is declared here so the pydantic data
converter can round-trip it.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Enums
# =============================================================================

class LeadStage(str, Enum):
    """Sales funnel stage of a lead."""
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    DEMO_SCHEDULED = "demo_scheduled"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


CLOSED_STAGES = frozenset({LeadStage.WON, LeadStage.LOST})


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class FollowUpType(str, Enum):
    """Steps of the follow-up sequences."""
    PRE_DEMO_24H = "pre_demo_24h"
    PRE_DEMO_REMINDER = "pre_demo_reminder"
    POST_DEMO = "post_demo"
    SAID_LATER = "said_later"
    COLD_LEAD_REENGAGEMENT = "cold_lead_reengagement"
    REENGAGEMENT_2 = "reengagement_2"
    REENGAGEMENT_3 = "reengagement_3"
    NO_SHOW_FOLLOWUP = "no_show_followup"
    PROPOSAL_REMINDER = "proposal_reminder"


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TenantTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class StripePlan(str, Enum):
    STARTER = "starter"
    GROWTH = "growth"
    BUSINESS = "business"


class SyncEvent(str, Enum):
    """Business events that trigger CRM / ad-platform synchronisation."""
    DEMO_SCHEDULED = "demo_scheduled"
    LEAD_QUALIFIED = "lead_qualified"
    PAYMENT_COMPLETED = "payment_completed"
    CONVERSATION_ENDED = "conversation_ended"


class PaymentStatus(str, Enum):
    """Payment workflow state machine."""
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


class BookingStatus(str, Enum):
    """Demo booking workflow state machine."""
    CREATING = "creating"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class FollowUpOutcome(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    STOPPED = "stopped"
    COMPLETED = "completed"


# =============================================================================
# Tenant
# =============================================================================

class TenantLimits(BaseModel):
    """Per-tier limits (loaded from lanes.yaml, not hardcoded)."""
    max_follow_ups_per_lead: int = Field(default=-1, description="-1 means unlimited")


class TenantContext(BaseModel):
    """Tenant identity carried by every workflow input."""
    tenant_id: str = Field(..., min_length=1)
    tier: TenantTier = TenantTier.STARTER
    limits: TenantLimits = Field(default_factory=TenantLimits)


class TenantCredentials(BaseModel):
    """WhatsApp phone number id + access token pair of a tenant."""
    model_config = ConfigDict(frozen=True)

    phone_number_id: str
    access_token: str


# =============================================================================
# Core records
# =============================================================================

class Lead(BaseModel):
    id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    industry: Optional[str] = None
    challenge: Optional[str] = None
    stage: LeadStage = LeadStage.NEW
    last_interaction: Optional[datetime] = None
    tenant_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


class Appointment(BaseModel):
    id: str
    lead_id: str
    scheduled_at: datetime
    event_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED


class FollowUpRecord(BaseModel):
    id: str
    lead_id: str
    appointment_id: Optional[str] = None
    scheduled_for: datetime
    type: FollowUpType
    message: str = ""
    status: FollowUpStatus = FollowUpStatus.PENDING
    sent_at: Optional[datetime] = None
    attempt: int = 1
    workflow_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: str
    content: str
    created_at: Optional[datetime] = None


# =============================================================================
# Value objects returned by activities
# =============================================================================

class CalSlot(BaseModel):
    """A bookable slot in the business timezone."""
    model_config = ConfigDict(frozen=True)

    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="HH:MM, 24h")

    def start_at(self, timezone: str) -> datetime:
        """Aware start datetime of this slot in the given timezone."""
        return datetime.combine(
            date.fromisoformat(self.date),
            time.fromisoformat(self.time),
            tzinfo=ZoneInfo(timezone),
        )


class BookingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    event_id: Optional[str] = None
    meeting_url: Optional[str] = None
    start_at: Optional[datetime] = None
    error: Optional[str] = None


class CheckoutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    short_url: str
    session_id: str
    customer_id: str


class OperationResult(BaseModel):
    """Generic `{success, error}` shape for expected failures."""
    success: bool
    error: Optional[str] = None
    id: Optional[str] = None


class MessageResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class TransitionResult(BaseModel):
    """Result of a conditional state transition (exactly-once guard)."""
    transitioned: bool


class CustomerResult(BaseModel):
    customer_id: str
    is_new: bool


class UrlResult(BaseModel):
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None


class CheckoutSessionResult(BaseModel):
    success: bool
    checkout: Optional[CheckoutResult] = None
    error: Optional[str] = None


class SubscriptionInfo(BaseModel):
    id: str
    status: str
    customer_id: Optional[str] = None
    cancel_at_period_end: bool = False


class CrmSyncResult(BaseModel):
    success: bool
    contact_id: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Activity parameters
# =============================================================================

class ListRow(BaseModel):
    id: str
    title: str
    description: str = ""


class SendMessageParams(BaseModel):
    phone: str
    text: str
    credentials: Optional[TenantCredentials] = None


class SendListParams(BaseModel):
    phone: str
    rows: List[ListRow]
    header_text: str
    body_text: str
    button_text: str = "Ver horarios"
    section_title: str = "Horarios disponibles"
    credentials: Optional[TenantCredentials] = None


class SendButtonsParams(BaseModel):
    phone: str
    body_text: str
    credentials: Optional[TenantCredentials] = None


class SendMediaParams(BaseModel):
    phone: str
    url: str
    caption: str = ""
    filename: Optional[str] = None
    credentials: Optional[TenantCredentials] = None


class SendPaymentLinkParams(BaseModel):
    phone: str
    checkout_url: str
    plan_name: str
    expiry_hours: float = 24.0
    credentials: Optional[TenantCredentials] = None


class MarkReadParams(BaseModel):
    message_id: str
    credentials: Optional[TenantCredentials] = None


class CreateEventParams(BaseModel):
    slot: CalSlot
    name: str
    email: str
    phone: str
    notes: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RescheduleEventParams(BaseModel):
    """Either a slot in business time or an exact instant (used to move an event back)."""

    event_id: str
    new_slot: Optional[CalSlot] = None
    new_start: Optional[datetime] = None

    @model_validator(mode="after")
    def _has_target(self) -> "RescheduleEventParams":
        if self.new_slot is None and self.new_start is None:
            raise ValueError("new_slot or new_start is required")
        return self


class UpdateEventEmailParams(BaseModel):
    event_id: str
    email: str


class CheckoutParams(BaseModel):
    email: str
    phone: str
    plan: StripePlan
    lead_id: str
    workflow_id: str
    name: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CustomerParams(BaseModel):
    email: str
    phone: str
    name: Optional[str] = None


class PortalParams(BaseModel):
    customer_id: str
    return_url: Optional[str] = None


class CancelSubscriptionParams(BaseModel):
    subscription_id: str
    immediately: bool = False


class UpdateStageParams(BaseModel):
    lead_id: str
    stage: LeadStage


class UpdateLeadParams(BaseModel):
    lead_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


class SaveMessageParams(BaseModel):
    conversation_id: str
    role: str
    content: str
    lead_id: Optional[str] = None


class RecentMessagesParams(BaseModel):
    conversation_id: str
    limit: int = Field(default=20, ge=1, le=200)


class CreateAppointmentParams(BaseModel):
    lead_id: str
    scheduled_at: datetime
    event_id: Optional[str] = None


class AppointmentStatusParams(BaseModel):
    appointment_id: str
    status: AppointmentStatus


class RescheduleAppointmentParams(BaseModel):
    appointment_id: str
    scheduled_at: datetime
    event_id: Optional[str] = None


class SaveMemoryParams(BaseModel):
    lead_id: str
    memory: str


class CreateFollowUpParams(BaseModel):
    lead_id: str
    scheduled_for: datetime
    type: FollowUpType
    message: str = ""
    appointment_id: Optional[str] = None
    workflow_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CancelFollowUpsParams(BaseModel):
    lead_id: str
    appointment_id: Optional[str] = None
    types: List[FollowUpType] = Field(default_factory=list)
    exclude_workflow_id: Optional[str] = None


class RescheduleFollowUpsParams(BaseModel):
    appointment_id: str
    scheduled_at: datetime


class PendingFollowUpsParams(BaseModel):
    window_minutes: int = Field(default=5, ge=1, le=24 * 60)
    limit: int = Field(default=100, ge=1, le=1000)


class ColdLeadsParams(BaseModel):
    hours_inactive: int = Field(default=24, ge=1)
    limit: int = Field(default=50, ge=1, le=500)


class ConversionParams(BaseModel):
    event_name: str
    lead: Lead


class MemorySummaryParams(BaseModel):
    lead_id: str
    messages: List[ChatMessage]


# =============================================================================
# Workflow inputs
# =============================================================================

class ActivityRetry(BaseModel):
    """Retry and timeout options for one group of activities (seconds)."""
    model_config = ConfigDict(frozen=True)

    initial_interval: float = Field(default=1.0, gt=0)
    backoff_coefficient: float = Field(default=2.0, ge=1)
    max_attempts: int = Field(default=3, ge=0, description="0 means unlimited")
    max_interval: float = Field(default=30.0, gt=0)
    start_to_close_timeout: float = Field(default=30.0, gt=0)


class RetryPlan(BaseModel):
    """
    Activity options a workflow runs with.

    Part of the workflow input, so it is fixed when the workflow starts and
    every worker replaying the history uses the same values.
    """
    model_config = ConfigDict(frozen=True)

    core: ActivityRetry = Field(default_factory=ActivityRetry)
    integration: ActivityRetry = Field(
        default_factory=lambda: ActivityRetry(
            initial_interval=2.0, max_attempts=5, max_interval=60.0, start_to_close_timeout=60.0
        )
    )


class BaseWorkflowInput(BaseModel):
    tenant: TenantContext
    lead_id: str
    lead: Lead
    credentials: Optional[TenantCredentials] = None
    retry: RetryPlan = Field(default_factory=RetryPlan)


class FollowUpInput(BaseWorkflowInput):
    type: FollowUpType
    appointment_id: Optional[str] = None
    scheduled_at: Optional[datetime] = Field(None, description="Demo start, for demo-relative types")
    scheduled_for: Optional[datetime] = Field(None, description="Explicit fire time, overrides the delay table")


class DemoRemindersInput(BaseWorkflowInput):
    appointment_id: str
    scheduled_at: datetime


class ReengagementInput(BaseWorkflowInput):
    pass


class DemoBookingInput(BaseWorkflowInput):
    slot: CalSlot
    email: str


class RescheduleInput(BaseWorkflowInput):
    event_id: str
    appointment_id: str
    new_slot: CalSlot


class CancelBookingInput(BaseWorkflowInput):
    event_id: str
    appointment_id: str
    reason: Optional[str] = None


class PaymentInput(BaseWorkflowInput):
    email: str
    plan: StripePlan
    expiry_hours: float = Field(default=24.0, gt=0)
    reminder_hours: List[float] = Field(default_factory=lambda: [12.0, 20.0])


class IntegrationSyncInput(BaseWorkflowInput):
    event: SyncEvent
    conversation_id: Optional[str] = None


class BulkSyncInput(BaseModel):
    tenant: TenantContext
    lead_ids: List[str]
    batch_size: int = Field(default=10, ge=1, le=100)
    retry: RetryPlan = Field(default_factory=RetryPlan)


class MemoryGenerationInput(BaseModel):
    tenant: TenantContext
    lead_id: str
    conversation_id: str
    retry: RetryPlan = Field(default_factory=RetryPlan)


# =============================================================================
# Signal payloads
# =============================================================================

class PaymentCompleted(BaseModel):
    session_id: str
    subscription_id: str


class ScheduleUpdate(BaseModel):
    scheduled_at: datetime


# =============================================================================
# Workflow results
# =============================================================================

class FollowUpResult(BaseModel):
    outcome: FollowUpOutcome
    sent: List[FollowUpType] = Field(default_factory=list)
    reason: Optional[str] = None


class BookingWorkflowResult(BaseModel):
    success: bool
    status: BookingStatus
    event_id: Optional[str] = None
    appointment_id: Optional[str] = None
    meeting_url: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    reschedules: int = 0
    error: Optional[str] = None


class PaymentResult(BaseModel):
    success: bool
    status: PaymentStatus
    session_id: Optional[str] = None
    subscription_id: Optional[str] = None
    error: Optional[str] = None


class IntegrationSyncResult(BaseModel):
    crm_contact_id: Optional[str] = None
    conversion_tracked: bool = False
    memory_generated: bool = False


class BulkSyncResult(BaseModel):
    synced: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class MemoryResult(BaseModel):
    success: bool
    memory: Optional[str] = None
    error: Optional[str] = None


class WorkflowStatus(BaseModel):
    workflow_id: str
    status: str
    result: Optional[Any] = None


def demo_end(scheduled_at: datetime, duration_minutes: int = 30) -> datetime:
    """End of a demo that starts at `scheduled_at`."""
    return scheduled_at + timedelta(minutes=duration_minutes)
