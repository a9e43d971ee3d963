"""
Shared fixtures for Loomi Temporal tests.

- settings / store: IntegrationSettings with fake credentials and a
  PersistenceActivities on a throwaway SQLite database
- make_lead / make_appointment: seed rows
- services: recording stand-ins for WhatsApp, Cal.com, Stripe and the
  CRM / ads / LLM activities, registered under the real activity names;
  `services.gate(name)` holds an activity until the test releases it
- workflow_env / run_worker: time-skipping Temporal test environment
"""

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy import select
from temporalio import activity
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import UnsandboxedWorkflowRunner, Worker

from loomi_workflows.models import (
    Appointment,
    AppointmentStatus,
    BookingResult,
    CheckoutParams,
    CheckoutResult,
    CheckoutSessionResult,
    ConversionParams,
    CreateAppointmentParams,
    CreateEventParams,
    CrmSyncResult,
    FollowUpRecord,
    Lead,
    LeadStage,
    MemorySummaryParams,
    MessageResult,
    OperationResult,
    RescheduleEventParams,
    SendButtonsParams,
    SendMessageParams,
    SendPaymentLinkParams,
    TenantContext,
    TenantLimits,
    TenantTier,
)
from loomi_workflows.storage import create_db_engine, create_session_factory
from loomi_workflows.storage.models import AppointmentModel, FollowUpModel, LeadModel
from loomi_workflows.temporal.activities import PersistenceActivities
from loomi_workflows.temporal.config import IntegrationSettings
from loomi_workflows.temporal.workflows import ALL_WORKFLOWS

TEST_QUEUE = "loomi-test"

# Timezone the stub calendar books in
CALENDAR_TIMEZONE = "America/Mexico_City"


# =============================================================================
# Configuration and store
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> IntegrationSettings:
    return IntegrationSettings(
        database_url=f"sqlite:///{tmp_path}/loomi.db",
        whatsapp_phone_number_id="PN-100",
        whatsapp_access_token="wa-token",
        cal_api_key="cal-key",
        cal_event_type_id="42",
        cal_api_base="https://cal.test/v1",
        stripe_secret_key="sk_test_123",
        stripe_price_ids={"starter": "price_starter", "growth": "price_growth", "business": "price_business"},
        public_base_url="https://loomi.test",
        hubspot_api_key="hs-key",
        meta_pixel_id="pixel-1",
        meta_access_token="meta-token",
        openai_api_key="sk-openai",
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> PersistenceActivities:
    return PersistenceActivities(session_factory)


@pytest.fixture
def make_lead(session_factory):
    """Insert a lead and return it as the domain model."""

    def _make(
        stage: LeadStage = LeadStage.CONTACTED,
        last_interaction: Optional[datetime] = None,
        **fields,
    ) -> Lead:
        values = {
            "id": f"lead-{uuid.uuid4().hex[:8]}",
            "phone": "5215512345678",
            "name": "Ana López",
            "company": "Clínica Sol",
            "industry": "salud",
            "tenant_id": "tenant-1",
        }
        values.update(fields)
        with session_factory() as session:
            row = LeadModel(stage=stage, last_interaction=last_interaction, **values)
            session.add(row)
            session.commit()
            return row.to_lead()

    return _make


@pytest.fixture
def make_appointment(session_factory):
    def _make(lead_id: str, scheduled_at: datetime, event_id: str = "evt-old") -> Appointment:
        with session_factory() as session:
            row = AppointmentModel(
                lead_id=lead_id,
                scheduled_at=scheduled_at,
                event_id=event_id,
                status=AppointmentStatus.SCHEDULED,
            )
            session.add(row)
            session.commit()
            return row.to_appointment()

    return _make


@pytest.fixture
def update_lead_row(session_factory):
    """Change lead columns behind the workflows' back."""

    def _update(lead_id: str, **values) -> None:
        with session_factory() as session:
            row = session.get(LeadModel, lead_id)
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()

    return _update


@pytest.fixture
def follow_ups_for(session_factory):
    """All follow-up records of a lead, oldest first."""

    def _list(lead_id: str) -> List[FollowUpRecord]:
        with session_factory() as session:
            rows = session.scalars(
                select(FollowUpModel)
                .where(FollowUpModel.lead_id == lead_id)
                .order_by(FollowUpModel.created_at.asc())
            ).all()
            return [row.to_record() for row in rows]

    return _list


@pytest.fixture
def eventually():
    """Poll an async check until it returns something truthy."""

    async def _eventually(check, timeout: float = 10.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = await check()
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.05)

    return _eventually


@pytest.fixture
def tenant() -> TenantContext:
    return TenantContext(tenant_id="tenant-1", tier=TenantTier.STARTER, limits=TenantLimits(max_follow_ups_per_lead=5))


# =============================================================================
# External services
# =============================================================================

class Gate:
    """Holds matching activity calls until the test sets `release`."""

    def __init__(self, when: Optional[Callable[[Any], bool]] = None) -> None:
        self.when = when
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def hold(self, params: Any) -> None:
        if self.when is not None and not self.when(params):
            return
        self.entered.set()
        await self.release.wait()


class StubServices:
    """
    Recording stand-ins for every non-persistence activity the workflows call.

    Set the `*_result` attributes (or `*_error`) before starting a workflow
    to script the outcome.
    """

    def __init__(self) -> None:
        self.messages: List[SendMessageParams] = []
        self.buttons: List[SendButtonsParams] = []
        self.payment_links: List[SendPaymentLinkParams] = []
        self.events_created: List[CreateEventParams] = []
        self.events_cancelled: List[str] = []
        self.events_rescheduled: List[RescheduleEventParams] = []
        self.checkouts: List[CheckoutParams] = []
        self.crm_synced: List[Lead] = []
        self.conversions: List[ConversionParams] = []
        self.summaries: List[MemorySummaryParams] = []
        self.message_times: List[datetime] = []
        self.gates: Dict[str, Gate] = {}

        self.send_result = MessageResult(success=True, message_id="wamid.1")
        self.create_event_result = BookingResult(success=True, event_id="evt-1", meeting_url="https://cal.test/meet/evt-1")
        self.create_event_error: Optional[Exception] = None
        self.reschedule_result = BookingResult(success=True, event_id="evt-1")
        self.checkout_result = CheckoutSessionResult(
            success=True,
            checkout=CheckoutResult(
                url="https://checkout.stripe.test/c/cs_test_1",
                short_url="https://loomi.test/pay/abc123",
                session_id="cs_test_1",
                customer_id="cus_1",
            ),
        )
        self.checkout_error: Optional[Exception] = None
        self.crm_result = CrmSyncResult(success=True, contact_id="hs-1")
        self.crm_error: Optional[Exception] = None
        self.summary: Optional[str] = "Ana, Clínica Sol, quiere automatizar citas."

    def texts(self) -> List[str]:
        return [m.text for m in self.messages]

    def gate(self, name: str, when: Optional[Callable[[Any], bool]] = None) -> Gate:
        """Hold calls of activity `name` (matching `when`) until released."""
        self.gates[name] = Gate(when)
        return self.gates[name]

    async def _hold(self, name: str, params: Any) -> None:
        gate = self.gates.get(name)
        if gate is not None:
            await gate.hold(params)

    @activity.defn(name="send_message")
    async def send_message(self, params: SendMessageParams) -> MessageResult:
        await self._hold("send_message", params)
        self.messages.append(params)
        self.message_times.append(activity.info().current_attempt_scheduled_time)
        return self.send_result

    @activity.defn(name="send_confirmation_buttons")
    async def send_confirmation_buttons(self, params: SendButtonsParams) -> MessageResult:
        self.buttons.append(params)
        return self.send_result

    @activity.defn(name="send_payment_link")
    async def send_payment_link(self, params: SendPaymentLinkParams) -> MessageResult:
        self.payment_links.append(params)
        return self.send_result

    @activity.defn(name="create_event")
    async def create_event(self, params: CreateEventParams) -> BookingResult:
        self.events_created.append(params)
        if self.create_event_error is not None:
            raise self.create_event_error
        result = self.create_event_result
        if result.success and result.start_at is None:
            result = result.model_copy(update={"start_at": params.slot.start_at(CALENDAR_TIMEZONE)})
        return result

    @activity.defn(name="cancel_event")
    async def cancel_event(self, event_id: str) -> OperationResult:
        self.events_cancelled.append(event_id)
        return OperationResult(success=True, id=event_id)

    @activity.defn(name="reschedule_event")
    async def reschedule_event(self, params: RescheduleEventParams) -> BookingResult:
        self.events_rescheduled.append(params)
        result = self.reschedule_result
        if result.success and result.start_at is None:
            start = params.new_start or params.new_slot.start_at(CALENDAR_TIMEZONE)
            result = result.model_copy(update={"start_at": start})
        return result

    @activity.defn(name="create_checkout_session")
    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutSessionResult:
        await self._hold("create_checkout_session", params)
        self.checkouts.append(params)
        if self.checkout_error is not None:
            raise self.checkout_error
        return self.checkout_result

    @activity.defn(name="sync_lead_to_crm")
    async def sync_lead_to_crm(self, lead: Lead) -> CrmSyncResult:
        self.crm_synced.append(lead)
        if self.crm_error is not None:
            raise self.crm_error
        return self.crm_result

    @activity.defn(name="track_conversion")
    async def track_conversion(self, params: ConversionParams) -> OperationResult:
        self.conversions.append(params)
        return OperationResult(success=True)

    @activity.defn(name="generate_memory_summary")
    async def generate_memory_summary(self, params: MemorySummaryParams) -> Optional[str]:
        self.summaries.append(params)
        return self.summary

    def callables(self) -> list:
        return [
            self.send_message,
            self.send_confirmation_buttons,
            self.send_payment_link,
            self.create_event,
            self.cancel_event,
            self.reschedule_event,
            self.create_checkout_session,
            self.sync_lead_to_crm,
            self.track_conversion,
            self.generate_memory_summary,
        ]


def persistence_callables(store: PersistenceActivities, services: StubServices) -> list:
    callables = [
        store.get_lead,
        store.update_lead_stage,
        store.update_lead,
        store.get_recent_messages,
        store.create_appointment,
        store.get_appointment,
        store.update_appointment_status,
        store.complete_appointment,
        store.reschedule_appointment,
        store.save_lead_memory,
        store.create_follow_up,
        store.mark_follow_up_sent,
        store.mark_follow_up_failed,
        store.cancel_follow_up,
        store.cancel_follow_ups,
        store.reschedule_follow_ups,
        store.count_follow_ups,
    ]

    gate = services.gates.get("create_appointment")
    if gate is not None:

        @activity.defn(name="create_appointment")
        async def create_appointment(params: CreateAppointmentParams) -> OperationResult:
            await gate.hold(params)
            return store.create_appointment(params)

        callables[callables.index(store.create_appointment)] = create_appointment
    return callables


@pytest.fixture
def services() -> StubServices:
    return StubServices()


# =============================================================================
# Temporal
# =============================================================================

@pytest.fixture
async def workflow_env():
    """Time-skipping Temporal test environment."""
    async with await WorkflowEnvironment.start_time_skipping(data_converter=pydantic_data_converter) as env:
        yield env


@pytest.fixture
def run_worker(workflow_env, store, services):
    """
    Context manager running a worker with every workflow, the real
    persistence activities and the stub services.

        async with run_worker():
            ...
    """

    @asynccontextmanager
    async def _run(task_queue: str = TEST_QUEUE, **worker_kwargs):
        with ThreadPoolExecutor(max_workers=4) as executor:
            async with Worker(
                workflow_env.client,
                task_queue=task_queue,
                workflows=ALL_WORKFLOWS,
                activities=services.callables() + persistence_callables(store, services),
                activity_executor=executor,
                workflow_runner=UnsandboxedWorkflowRunner(),
                **worker_kwargs,
            ) as worker:
                yield worker

    return _run
