"""
Third-party sync activities: HubSpot CRM, Meta Conversions API, OpenAI memory.

These integrations are optional per deployment. When one is not configured
the activity reports it as a failed (or empty) result instead of raising,
so a sync workflow can still run the branches that are configured.
"""

import hashlib
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI
from temporalio import activity

from ...errors import ConfigurationError, TransientAPIError, json_body, raise_for_transient
from ...models import ConversionParams, CrmSyncResult, Lead, MemorySummaryParams, OperationResult
from ..config import IntegrationSettings
from ..messages import HUBSPOT_LIFECYCLE_STAGES, MEMORY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
META_GRAPH_VERSION = "v18.0"

# Fewer messages than this are not worth summarising
MIN_MESSAGES_FOR_SUMMARY = 3


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hubspot_properties(lead: Lead) -> Dict[str, str]:
    """HubSpot contact properties for a lead."""
    properties = {
        "phone": lead.phone,
        "lifecyclestage": HUBSPOT_LIFECYCLE_STAGES[lead.stage],
    }
    if lead.name:
        first, _, last = lead.name.strip().partition(" ")
        properties["firstname"] = first
        if last:
            properties["lastname"] = last
    if lead.email:
        properties["email"] = lead.email
    if lead.company:
        properties["company"] = lead.company
    if lead.industry:
        properties["industry"] = lead.industry
    return properties


class IntegrationActivities:
    """CRM upsert, ad conversion tracking and conversation summaries."""

    def __init__(
        self,
        settings: IntegrationSettings,
        http: Optional[httpx.AsyncClient] = None,
        llm: Optional[AsyncOpenAI] = None,
    ):
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._llm = llm

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(self, service: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientAPIError(service, str(e)) from e
        raise_for_transient(service, response.status_code, response.text)
        return response

    @activity.defn(name="sync_lead_to_crm")
    async def sync_lead_to_crm(self, lead: Lead) -> CrmSyncResult:
        """Upsert the lead as a HubSpot contact, matched by phone."""
        if not self.settings.hubspot_api_key:
            return CrmSyncResult(success=False, error="HubSpot API key not configured")

        headers = {"Authorization": f"Bearer {self.settings.hubspot_api_key}"}
        search = await self._send(
            "hubspot",
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts/search",
            headers=headers,
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "phone", "operator": "EQ", "value": lead.phone}]}
                ]
            },
        )
        if search.is_error:
            return CrmSyncResult(success=False, error=f"Search failed: {search.text}")

        results = json_body("hubspot", search).get("results") or []
        body = {"properties": hubspot_properties(lead)}

        if results:
            contact_id = results[0]["id"]
            response = await self._send(
                "hubspot",
                "PATCH",
                f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts/{contact_id}",
                headers=headers,
                json=body,
            )
            if response.is_error:
                return CrmSyncResult(success=False, error=f"Update failed: {response.text}")
            return CrmSyncResult(success=True, contact_id=contact_id)

        response = await self._send(
            "hubspot",
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts",
            headers=headers,
            json=body,
        )
        if response.is_error:
            return CrmSyncResult(success=False, error=f"Create failed: {response.text}")
        return CrmSyncResult(success=True, contact_id=str(json_body("hubspot", response)["id"]))

    @activity.defn(name="track_conversion")
    async def track_conversion(self, params: ConversionParams) -> OperationResult:
        """Send a server-side conversion event; phone and email are sha256-hashed."""
        if not (self.settings.meta_pixel_id and self.settings.meta_access_token):
            logger.info("Meta Pixel not configured, skipping conversion tracking")
            return OperationResult(success=False, error="Meta Pixel not configured")

        lead = params.lead
        user_data = {"ph": [_sha256(re.sub(r"\D", "", lead.phone))]}
        if lead.email:
            user_data["em"] = [_sha256(lead.email.strip().lower())]

        payload = {
            "data": [
                {
                    "event_name": params.event_name,
                    "event_time": int(time.time()),
                    "action_source": "website",
                    "user_data": user_data,
                    "custom_data": {
                        "lead_id": lead.id,
                        "stage": lead.stage.value,
                        "industry": lead.industry,
                    },
                }
            ]
        }
        response = await self._send(
            "meta",
            "POST",
            f"https://graph.facebook.com/{META_GRAPH_VERSION}/{self.settings.meta_pixel_id}/events",
            params={"access_token": self.settings.meta_access_token},
            json=payload,
        )
        if response.is_error:
            logger.warning(f"Meta Conversions API error: {response.text}")
            return OperationResult(success=False, error=response.text)
        return OperationResult(success=True)

    @property
    def llm(self) -> Optional[AsyncOpenAI]:
        if self._llm is None and self.settings.openai_api_key:
            self._llm = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._llm

    @activity.defn(name="generate_memory_summary")
    async def generate_memory_summary(self, params: MemorySummaryParams) -> Optional[str]:
        """
        Summarise a conversation for the lead's memory.

        Returns None when OpenAI is not configured or the conversation is too
        short to be worth summarising.
        """
        if self.llm is None:
            logger.info("OpenAI API key not configured, skipping memory generation")
            return None
        if len(params.messages) < MIN_MESSAGES_FOR_SUMMARY:
            return None

        conversation = "\n".join(
            f"{'Usuario' if m.role == 'user' else 'Loomi'}: {m.content}" for m in params.messages
        )
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": MEMORY_SYSTEM_PROMPT},
            {"role": "user", "content": f"Resume esta conversación:\n\n{conversation}"},
        ]
        try:
            response = await self.llm.chat.completions.create(
                model=self.settings.openai_model,
                messages=messages,
                max_tokens=300,
                temperature=0.3,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientAPIError("openai", str(e)) from e
        except openai.AuthenticationError as e:
            raise ConfigurationError(f"OpenAI authentication failed: {e}") from e
        except openai.APIError as e:
            logger.warning(f"Memory generation failed for lead {params.lead_id}: {e}")
            return None

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None
