"""
WhatsApp Cloud API activities.

Every call takes optional tenant credentials; without them the platform
default phone number and token from IntegrationSettings are used.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from temporalio import activity

from ...errors import ConfigurationError, TransientAPIError, json_body, raise_for_transient
from ...models import (
    MarkReadParams,
    MessageResult,
    OperationResult,
    SendButtonsParams,
    SendListParams,
    SendMediaParams,
    SendMessageParams,
    SendPaymentLinkParams,
    TenantCredentials,
)
from ..config import IntegrationSettings
from ..messages import payment_link

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"

# Interactive lists accept at most 10 rows
MAX_LIST_ROWS = 10

PLAN_ROWS = [
    {"id": "plan_starter", "title": "Starter - $199/mes", "description": "500 conversaciones, 1 agente"},
    {"id": "plan_growth", "title": "Growth - $349/mes", "description": "2,000 conversaciones, 3 agentes"},
    {"id": "plan_business", "title": "Business - $599/mes", "description": "Ilimitado, 10 agentes, prioridad"},
]


class WhatsAppActivities:
    """Outbound messaging through the WhatsApp Cloud API."""

    def __init__(self, settings: IntegrationSettings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=20.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _credentials(self, credentials: Optional[TenantCredentials]) -> TenantCredentials:
        if credentials:
            return credentials
        if self.settings.whatsapp_phone_number_id and self.settings.whatsapp_access_token:
            return TenantCredentials(
                phone_number_id=self.settings.whatsapp_phone_number_id,
                access_token=self.settings.whatsapp_access_token,
            )
        raise ConfigurationError("WhatsApp credentials missing: pass tenant credentials or set WHATSAPP_ACCESS_TOKEN")

    def _url(self, phone_number_id: str) -> str:
        return f"{GRAPH_API_BASE}/{self.settings.whatsapp_api_version}/{phone_number_id}/messages"

    async def _post(self, credentials: Optional[TenantCredentials], body: Dict[str, Any]) -> MessageResult:
        creds = self._credentials(credentials)
        try:
            response = await self._http.post(
                self._url(creds.phone_number_id),
                json=body,
                headers={"Authorization": f"Bearer {creds.access_token}"},
            )
        except httpx.TransportError as e:
            raise TransientAPIError("whatsapp", str(e)) from e

        raise_for_transient("whatsapp", response.status_code, response.text)
        if response.is_error:
            logger.warning(f"WhatsApp API rejected message ({response.status_code}): {response.text}")
            return MessageResult(success=False, error=response.text)

        messages = json_body("whatsapp", response).get("messages") or [{}]
        return MessageResult(success=True, message_id=messages[0].get("id"))

    @staticmethod
    def _envelope(phone: str, type: str, **payload: Any) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": type,
            **payload,
        }

    @activity.defn(name="send_message")
    async def send_message(self, params: SendMessageParams) -> MessageResult:
        """Send a plain text message."""
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "text", text={"body": params.text}),
        )

    @activity.defn(name="send_schedule_list")
    async def send_schedule_list(self, params: SendListParams) -> MessageResult:
        """Send an interactive list of slots; rows beyond the tenth are dropped."""
        rows = [
            {"id": row.id, "title": row.title, "description": row.description}
            for row in params.rows[:MAX_LIST_ROWS]
        ]
        interactive = {
            "type": "list",
            "header": {"type": "text", "text": params.header_text},
            "body": {"text": params.body_text},
            "action": {
                "button": params.button_text,
                "sections": [{"title": params.section_title, "rows": rows}],
            },
        }
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "interactive", interactive=interactive),
        )

    @activity.defn(name="send_confirmation_buttons")
    async def send_confirmation_buttons(self, params: SendButtonsParams) -> MessageResult:
        interactive = {
            "type": "button",
            "body": {"text": params.body_text},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": "confirm_demo", "title": "Confirmo"}},
                    {"type": "reply", "reply": {"id": "change_time", "title": "Cambiar hora"}},
                ],
            },
        }
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "interactive", interactive=interactive),
        )

    @activity.defn(name="send_plan_selection")
    async def send_plan_selection(self, params: SendMessageParams) -> MessageResult:
        """Send the plan picker list. `params.text` is used as the body."""
        interactive = {
            "type": "list",
            "header": {"type": "text", "text": "Planes Loomi"},
            "body": {"text": params.text or "Elige el plan que mejor se adapte a tus necesidades:"},
            "action": {
                "button": "Ver planes",
                "sections": [{"title": "Planes disponibles", "rows": PLAN_ROWS}],
            },
        }
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "interactive", interactive=interactive),
        )

    @activity.defn(name="send_payment_link")
    async def send_payment_link(self, params: SendPaymentLinkParams) -> MessageResult:
        text = payment_link(params.checkout_url, params.plan_name, params.expiry_hours)
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "text", text={"body": text}),
        )

    @activity.defn(name="send_document")
    async def send_document(self, params: SendMediaParams) -> MessageResult:
        document = {"link": params.url, "caption": params.caption}
        if params.filename:
            document["filename"] = params.filename
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "document", document=document),
        )

    @activity.defn(name="send_image")
    async def send_image(self, params: SendMediaParams) -> MessageResult:
        return await self._post(
            params.credentials,
            self._envelope(params.phone, "image", image={"link": params.url, "caption": params.caption}),
        )

    @activity.defn(name="mark_as_read")
    async def mark_as_read(self, params: MarkReadParams) -> OperationResult:
        result = await self._post(
            params.credentials,
            {"messaging_product": "whatsapp", "status": "read", "message_id": params.message_id},
        )
        return OperationResult(success=result.success, error=result.error)
