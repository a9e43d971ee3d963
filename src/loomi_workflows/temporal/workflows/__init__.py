"""
Temporal Workflows for Loomi

- follow_up: single follow-ups, demo reminders, cold-lead re-engagement
- demo_booking: booking, rescheduling and cancelling demos
- payment: Stripe checkout with reminders and expiry
- integration_sync: CRM, ad conversions and conversation memory
"""

from .demo_booking import CancelBookingWorkflow, DemoBookingWorkflow, RescheduleWorkflow
from .follow_up import DemoRemindersWorkflow, FollowUpWorkflow, ReengagementWorkflow
from .integration_sync import BulkSyncWorkflow, IntegrationSyncWorkflow, MemoryGenerationWorkflow
from .payment import PaymentWorkflow

ALL_WORKFLOWS = [
    FollowUpWorkflow,
    DemoRemindersWorkflow,
    ReengagementWorkflow,
    DemoBookingWorkflow,
    RescheduleWorkflow,
    CancelBookingWorkflow,
    PaymentWorkflow,
    IntegrationSyncWorkflow,
    BulkSyncWorkflow,
    MemoryGenerationWorkflow,
]

__all__ = [
    "ALL_WORKFLOWS",
    "FollowUpWorkflow",
    "DemoRemindersWorkflow",
    "ReengagementWorkflow",
    "DemoBookingWorkflow",
    "RescheduleWorkflow",
    "CancelBookingWorkflow",
    "PaymentWorkflow",
    "IntegrationSyncWorkflow",
    "BulkSyncWorkflow",
    "MemoryGenerationWorkflow",
]
