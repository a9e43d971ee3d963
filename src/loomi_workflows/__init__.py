"""
Loomi workflows: durable sales processes for a WhatsApp sales agent.

Booking, follow-up sequences, payment checkout, lead re-engagement and
CRM / ad-platform sync, run as Temporal workflows.
"""

__version__ = "0.1.0"
