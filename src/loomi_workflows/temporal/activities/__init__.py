"""
Temporal Activities for Loomi workflows

Activities are the units that talk to the outside world:
- whatsapp: outbound messages (WhatsApp Cloud API)
- calendar: availability and bookings (Cal.com)
- billing: customers, checkout and subscriptions (Stripe)
- persistence: leads, appointments, messages, follow-ups, memory (SQLAlchemy)
- integrations: CRM, ad conversions, conversation memory (HubSpot, Meta, OpenAI)

Activities are methods of classes that hold their clients; the worker
registers the bound methods. Each lane builds its own ActivitySet so that
HTTP and database pools are bounded per lane.
"""

from dataclasses import dataclass
from typing import Callable, List

import httpx
from sqlalchemy.orm import sessionmaker

from ..config import IntegrationSettings
from .billing import BillingActivities
from .calendar import CalendarActivities
from .integrations import IntegrationActivities
from .persistence import PersistenceActivities
from .whatsapp import WhatsAppActivities


@dataclass
class ActivitySet:
    whatsapp: WhatsAppActivities
    calendar: CalendarActivities
    billing: BillingActivities
    persistence: PersistenceActivities
    integrations: IntegrationActivities

    @classmethod
    def create(
        cls,
        settings: IntegrationSettings,
        session_factory: sessionmaker,
        max_connections: int = 100,
    ) -> "ActivitySet":
        """Fresh clients for one lane; `max_connections` caps each HTTP client."""
        limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=min(20, max_connections))
        return cls(
            whatsapp=WhatsAppActivities(settings, httpx.AsyncClient(timeout=20.0, limits=limits)),
            calendar=CalendarActivities(settings, httpx.AsyncClient(timeout=30.0, limits=limits)),
            billing=BillingActivities(settings),
            persistence=PersistenceActivities(session_factory),
            integrations=IntegrationActivities(settings, http=httpx.AsyncClient(timeout=30.0, limits=limits)),
        )

    def callables(self) -> List[Callable]:
        """Every activity as a bound method, for Worker(activities=...)."""
        w, c, b, p, i = self.whatsapp, self.calendar, self.billing, self.persistence, self.integrations
        return [
            # Messaging
            w.send_message,
            w.send_schedule_list,
            w.send_confirmation_buttons,
            w.send_plan_selection,
            w.send_payment_link,
            w.send_document,
            w.send_image,
            w.mark_as_read,
            # Calendar
            c.check_availability,
            c.create_event,
            c.cancel_event,
            c.reschedule_event,
            c.update_event_email,
            # Billing
            b.create_or_get_customer,
            b.create_checkout_session,
            b.get_subscription,
            b.cancel_subscription,
            b.create_billing_portal_session,
            # Persistence
            p.get_lead,
            p.get_lead_by_phone,
            p.update_lead_stage,
            p.update_lead,
            p.get_cold_leads,
            p.save_message,
            p.get_recent_messages,
            p.create_appointment,
            p.get_active_appointment,
            p.get_appointment,
            p.update_appointment_status,
            p.complete_appointment,
            p.reschedule_appointment,
            p.get_lead_memory,
            p.save_lead_memory,
            p.create_follow_up,
            p.mark_follow_up_sent,
            p.mark_follow_up_failed,
            p.cancel_follow_up,
            p.cancel_follow_ups,
            p.reschedule_follow_ups,
            p.count_follow_ups,
            p.get_pending_follow_ups,
            p.get_follow_up,
            # Integrations
            i.sync_lead_to_crm,
            i.track_conversion,
            i.generate_memory_summary,
        ]

    async def aclose(self) -> None:
        await self.whatsapp.aclose()
        await self.calendar.aclose()
        await self.integrations.aclose()


__all__ = [
    "ActivitySet",
    "WhatsAppActivities",
    "CalendarActivities",
    "BillingActivities",
    "PersistenceActivities",
    "IntegrationActivities",
]
