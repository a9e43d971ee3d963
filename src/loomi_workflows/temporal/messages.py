"""
Message templates and lookup tables used by workflows.

Everything here is pure and deterministic, so workflows may call it
directly. All mappings are explicit tables keyed by closed enums.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from ..models import FollowUpType, Lead, LeadStage, StripePlan, SyncEvent


# =============================================================================
# Follow-up sequences
# =============================================================================

FOLLOW_UP_TEMPLATES: Dict[FollowUpType, str] = {
    FollowUpType.PRE_DEMO_24H: "¡Hola {name}! 👋 Te recuerdo que mañana tenemos nuestra demo. ¿Todo listo para vernos?",
    FollowUpType.PRE_DEMO_REMINDER: "¡Hola {name}! En 30 minutos comienza nuestra demo. Te espero puntual 🙌",
    FollowUpType.POST_DEMO: "¡Hola {name}! Gracias por tu tiempo en la demo. ¿Qué te pareció? ¿Tienes alguna pregunta?",
    FollowUpType.SAID_LATER: (
        "¡Hola {name}! Retomando nuestra conversación de ayer. "
        "¿Ahora sí tienes tiempo para platicarte de Loomi? 🙂"
    ),
    FollowUpType.COLD_LEAD_REENGAGEMENT: (
        "¡Hola {name}! Vi que nos quedamos a medias la última vez. "
        "¿Te gustaría retomar la plática sobre cómo Loomi puede ayudarte?"
    ),
    FollowUpType.REENGAGEMENT_2: (
        "¡Hola {name}! No quiero ser insistente, pero vi que {challenge}. "
        "¿Sigue siendo algo que te interesa?"
    ),
    FollowUpType.REENGAGEMENT_3: (
        "¡Hola {name}! Última vez que te escribo 🙂 "
        "Si cambias de opinión sobre automatizar tu WhatsApp, aquí estaré."
    ),
    FollowUpType.NO_SHOW_FOLLOWUP: (
        "¡Hola {name}! Noté que no pudiste unirte a la demo. "
        "¿Todo bien? Podemos reagendar cuando te funcione mejor."
    ),
    FollowUpType.PROPOSAL_REMINDER: (
        "¡Hola {name}! ¿Tuviste oportunidad de revisar la propuesta? Quedo atento a tus dudas."
    ),
}

# Fixed delays, measured from workflow start
FOLLOW_UP_DELAYS: Dict[FollowUpType, timedelta] = {
    FollowUpType.SAID_LATER: timedelta(hours=12),
    FollowUpType.COLD_LEAD_REENGAGEMENT: timedelta(hours=24),
    FollowUpType.REENGAGEMENT_2: timedelta(hours=60),
    FollowUpType.REENGAGEMENT_3: timedelta(hours=168),
    FollowUpType.NO_SHOW_FOLLOWUP: timedelta(minutes=7),
    FollowUpType.PROPOSAL_REMINDER: timedelta(hours=12),
}

# Offsets relative to the demo start
DEMO_OFFSETS: Dict[FollowUpType, timedelta] = {
    FollowUpType.PRE_DEMO_24H: -timedelta(hours=24),
    FollowUpType.PRE_DEMO_REMINDER: -timedelta(minutes=30),
    # 30 minute demo + 2 minutes
    FollowUpType.POST_DEMO: timedelta(minutes=32),
}

PRE_DEMO_TYPES = frozenset({FollowUpType.PRE_DEMO_24H, FollowUpType.PRE_DEMO_REMINDER})

# Fallback when a demo-relative step has no demo time
POST_DEMO_FALLBACK = timedelta(minutes=2)

REENGAGEMENT_SEQUENCE = (
    (FollowUpType.COLD_LEAD_REENGAGEMENT, timedelta(hours=24)),
    (FollowUpType.REENGAGEMENT_2, timedelta(hours=60)),
    (FollowUpType.REENGAGEMENT_3, timedelta(hours=168)),
)

# Reengagement stops if the lead wrote back more recently than this
RECENT_INTERACTION_WINDOW = timedelta(hours=12)

REENGAGEABLE_STAGES = frozenset({LeadStage.NEW, LeadStage.CONTACTED})


def follow_up_fire_time(
    type: FollowUpType,
    now: datetime,
    scheduled_at: Optional[datetime] = None,
) -> datetime:
    """
    When a follow-up of `type` should fire.

    Demo-relative types are anchored to `scheduled_at`; a time already in the
    past collapses to `now`.
    """
    if type in DEMO_OFFSETS:
        if scheduled_at is None:
            if type == FollowUpType.POST_DEMO:
                return now + POST_DEMO_FALLBACK
            return now
        return max(scheduled_at + DEMO_OFFSETS[type], now)
    return now + FOLLOW_UP_DELAYS[type]


def follow_up_message(type: FollowUpType, lead: Lead) -> str:
    return FOLLOW_UP_TEMPLATES[type].format(
        name=lead.name or "ahí",
        challenge=lead.challenge or "buscabas automatizar tu atención",
    )


# =============================================================================
# Demo booking
# =============================================================================

_WEEKDAYS = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")
_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def format_date_es(value: datetime) -> str:
    """'martes, 14 de octubre'"""
    return f"{_WEEKDAYS[value.weekday()]}, {value.day} de {_MONTHS[value.month - 1]}"


def format_time_12h(value: datetime) -> str:
    hours12 = value.hour % 12 or 12
    period = "PM" if value.hour >= 12 else "AM"
    return f"{hours12}:{value.minute:02d} {period}"


def booking_confirmation(lead: Lead, start: datetime, meeting_url: Optional[str]) -> str:
    link = f"Link de la reunión: {meeting_url}\n\n" if meeting_url else ""
    return (
        f"¡Listo {lead.name or ''}! 🎉\n\n"
        f"Tu demo quedó agendada para:\n"
        f"📅 {format_date_es(start)}\n"
        f"🕐 {format_time_12h(start)}\n\n"
        f"{link}"
        f"Te llegarán recordatorios antes de la llamada."
    )


def reschedule_confirmation(lead: Lead, start: datetime) -> str:
    return (
        f"¡Listo {lead.name or ''}! Tu demo se movió a:\n"
        f"📅 {format_date_es(start)}\n"
        f"🕐 {format_time_12h(start)}"
    )


def booking_cancelled(reason: Optional[str] = None) -> str:
    head = "Entendido, tu demo ha sido cancelada."
    if reason:
        head = f"{head} {reason}"
    return f'{head}\n\nCuando quieras reagendar, solo responde "Quiero agendar demo".'


CONFIRM_BUTTONS_TEXT = "¿Confirmas que estarás disponible?"

BOOKING_FAILED = (
    "Lo siento, hubo un problema al agendar tu demo. "
    "¿Podrías intentar de nuevo o responder con otro horario?"
)

RESCHEDULE_FAILED = (
    "Lo siento, no pude mover tu demo a ese horario. "
    "¿Podrías elegir otro?"
)


# =============================================================================
# Payment
# =============================================================================

PLAN_DISPLAY_NAMES: Dict[StripePlan, str] = {
    StripePlan.STARTER: "Starter ($199/mes)",
    StripePlan.GROWTH: "Growth ($349/mes)",
    StripePlan.BUSINESS: "Business ($599/mes)",
}


def payment_link(checkout_url: str, plan_name: str, expiry_hours: float) -> str:
    return (
        f"Tu link de pago para {plan_name} está listo:\n\n{checkout_url}\n\n"
        f"Este link expira en {expiry_hours:g} horas. "
        f"Si tienes alguna duda, responde a este mensaje."
    )


def payment_reminder(lead: Lead, plan_name: str, checkout_url: str, hours_left: float, final: bool) -> str:
    if final:
        return (
            f"¡Último aviso! Tu link de pago expira en {hours_left:g} horas:\n\n{checkout_url}\n\n"
            f"Si prefieres otro plan o tienes dudas, responde aquí."
        )
    return (
        f"¡Hola {lead.name or ''}! ¿Todo bien? Vi que no has completado tu pago del plan {plan_name}.\n\n"
        f"¿Tienes alguna duda que pueda resolver?"
    )


def payment_welcome(plan_name: str) -> str:
    return (
        f"¡Pago recibido! 🎉 Bienvenido a Loomi {plan_name}.\n\n"
        f"En los próximos minutos recibirás un correo con los siguientes pasos para configurar tu agente."
    )


def payment_expired(lead: Lead) -> str:
    return (
        f"¡Hola {lead.name or ''}! Noté que tu link de pago expiró. "
        f"¿Necesitas ayuda o tienes alguna duda sobre el plan?"
    )


PAYMENT_FAILED = "Lo siento, hubo un problema al generar tu link de pago. ¿Podrías intentar de nuevo?"


# =============================================================================
# Integrations
# =============================================================================

HUBSPOT_LIFECYCLE_STAGES: Dict[LeadStage, str] = {
    LeadStage.NEW: "subscriber",
    LeadStage.CONTACTED: "lead",
    LeadStage.QUALIFIED: "marketingqualifiedlead",
    LeadStage.DEMO_SCHEDULED: "salesqualifiedlead",
    LeadStage.PROPOSAL_SENT: "opportunity",
    LeadStage.NEGOTIATION: "opportunity",
    LeadStage.WON: "customer",
    LeadStage.LOST: "other",
}

META_CONVERSION_EVENTS: Dict[SyncEvent, str] = {
    SyncEvent.DEMO_SCHEDULED: "Schedule",
    SyncEvent.LEAD_QUALIFIED: "Lead",
    SyncEvent.PAYMENT_COMPLETED: "Purchase",
    SyncEvent.CONVERSATION_ENDED: "Contact",
}

MEMORY_SYSTEM_PROMPT = """Eres un asistente que genera resúmenes de conversaciones de ventas.
Genera un resumen conciso en español (máximo 150 palabras) que incluya:
- Nombre del lead (si se mencionó)
- Empresa e industria (si se mencionó)
- Principal interés o necesidad
- Objeciones mencionadas
- Estado actual de la conversación
- Próximos pasos acordados

Formato: texto plano sin markdown."""
