"""
Storage module for Loomi workflows.

Components:
- models: SQLAlchemy tables (leads, appointments, messages, follow_ups, lead_memory)
- database: engine and session factory
"""

from .database import create_db_engine, create_session_factory
from .models import (
    AppointmentModel,
    Base,
    FollowUpModel,
    LeadMemoryModel,
    LeadModel,
    MessageModel,
)

__all__ = [
    "Base",
    "LeadModel",
    "AppointmentModel",
    "MessageModel",
    "FollowUpModel",
    "LeadMemoryModel",
    "create_db_engine",
    "create_session_factory",
]
