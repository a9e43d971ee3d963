"""
Deterministic workflow ids.

Each id is derived from the business key of the operation so that the
reject-duplicate start policy can refuse a second start for the same key.
Ids that carry a timestamp take it as an argument: callers pass the
current time (client) or workflow.now() (inside a workflow).
"""

from datetime import datetime

from ..models import FollowUpType, StripePlan


def _ts(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def follow_up_id(type: FollowUpType, lead_id: str, now: datetime) -> str:
    return f"followup-{type.value}-{lead_id}-{_ts(now)}"


def demo_reminders_id(appointment_id: str) -> str:
    return f"demo-reminders-{appointment_id}"


def reengagement_id(lead_id: str) -> str:
    return f"reengagement-{lead_id}"


def booking_id(lead_id: str, now: datetime) -> str:
    return f"booking-{lead_id}-{_ts(now)}"


def reschedule_id(appointment_id: str, now: datetime) -> str:
    return f"reschedule-{appointment_id}-{_ts(now)}"


def cancel_booking_id(appointment_id: str) -> str:
    return f"cancel-booking-{appointment_id}"


def payment_id(lead_id: str, plan: StripePlan) -> str:
    return f"payment-{lead_id}-{plan.value}"


def integration_sync_id(lead_id: str, event: str, now: datetime) -> str:
    return f"sync-{event}-{lead_id}-{_ts(now)}"


def bulk_sync_id(tenant_id: str, now: datetime) -> str:
    return f"bulk-sync-{tenant_id}-{_ts(now)}"


def memory_id(conversation_id: str) -> str:
    return f"memory-{conversation_id}"
