"""
Configuration for Loomi Temporal workers and clients.

All configuration loaded from environment (optionally a .env file).
Zero hardcoding principle applied: API keys, price ids and connection
details never live in code.
"""

import base64
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from dotenv import load_dotenv
from temporalio.service import TLSConfig

from ..models import ActivityRetry, RetryPlan, StripePlan


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class TemporalConfig:
    """Temporal connection and workflow configuration."""

    # Connection
    address: str = "localhost:7233"
    namespace: str = "default"
    api_key: Optional[str] = None

    # mTLS: file paths take precedence over base64 values
    client_cert_path: Optional[str] = None
    client_key_path: Optional[str] = None
    client_cert_b64: Optional[str] = None
    client_key_b64: Optional[str] = None

    # Tenants that get a dedicated lane
    enterprise_tenant_ids: Tuple[str, ...] = ()

    # Payment link expiry (hours); reminders fire at 12h and 20h by default
    payment_expiry_hours: float = 24.0

    @property
    def target(self) -> str:
        """Temporal server address."""
        return self.address

    def client_cert_pair(self) -> Optional[Tuple[bytes, bytes]]:
        """Client certificate and key bytes, if configured."""
        if self.client_cert_path and self.client_key_path:
            return (
                Path(self.client_cert_path).read_bytes(),
                Path(self.client_key_path).read_bytes(),
            )
        if self.client_cert_b64 and self.client_key_b64:
            return (
                base64.b64decode(self.client_cert_b64),
                base64.b64decode(self.client_key_b64),
            )
        return None

    def tls(self) -> Union[TLSConfig, bool]:
        """
        TLS settings for Client.connect.

        - API key: TLS with default roots
        - Certificate pair: mutual TLS
        - Neither: plaintext (local development)
        """
        pair = self.client_cert_pair()
        if pair:
            cert, key = pair
            return TLSConfig(client_cert=cert, client_private_key=key)
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "TemporalConfig":
        """Load configuration from environment variables."""
        load_dotenv()
        return cls(
            address=os.getenv("TEMPORAL_ADDRESS", "localhost:7233"),
            namespace=os.getenv("TEMPORAL_NAMESPACE", "default"),
            api_key=os.getenv("TEMPORAL_API_KEY") or None,
            client_cert_path=os.getenv("TEMPORAL_CLIENT_CERT_PATH") or None,
            client_key_path=os.getenv("TEMPORAL_CLIENT_KEY_PATH") or None,
            client_cert_b64=os.getenv("TEMPORAL_CLIENT_CERT") or None,
            client_key_b64=os.getenv("TEMPORAL_CLIENT_KEY") or None,
            enterprise_tenant_ids=_split_csv(os.getenv("ENTERPRISE_TENANT_IDS")),
            payment_expiry_hours=float(os.getenv("PAYMENT_EXPIRY_HOURS", "24")),
        )


@dataclass(frozen=True)
class RetrySettings:
    """
    Activity retry and timeout settings.

    Core activities (messaging, calendar, billing, persistence) use the
    default group; third-party sync activities use the integration group.
    """

    default_initial_interval: float = 1.0
    default_backoff_coefficient: float = 2.0
    default_max_attempts: int = 3
    default_max_interval: float = 30.0
    default_start_to_close_timeout: int = 30

    integration_initial_interval: float = 2.0
    integration_backoff_coefficient: float = 2.0
    integration_max_attempts: int = 5
    integration_max_interval: float = 60.0
    integration_start_to_close_timeout: int = 60

    @classmethod
    def from_env(cls) -> "RetrySettings":
        load_dotenv()
        return cls(
            default_max_attempts=int(os.getenv("ACTIVITY_MAX_ATTEMPTS", "3")),
            integration_max_attempts=int(os.getenv("INTEGRATION_MAX_ATTEMPTS", "5")),
        )

    def plan(self) -> RetryPlan:
        """The retry plan handed to workflows started with these settings."""
        return RetryPlan(
            core=ActivityRetry(
                initial_interval=self.default_initial_interval,
                backoff_coefficient=self.default_backoff_coefficient,
                max_attempts=self.default_max_attempts,
                max_interval=self.default_max_interval,
                start_to_close_timeout=self.default_start_to_close_timeout,
            ),
            integration=ActivityRetry(
                initial_interval=self.integration_initial_interval,
                backoff_coefficient=self.integration_backoff_coefficient,
                max_attempts=self.integration_max_attempts,
                max_interval=self.integration_max_interval,
                start_to_close_timeout=self.integration_start_to_close_timeout,
            ),
        )


@dataclass(frozen=True)
class IntegrationSettings:
    """Credentials and endpoints of the third-party systems activities talk to."""

    database_url: str = "sqlite:///.data/loomi.db"

    # WhatsApp Cloud API (platform default credentials)
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_api_version: str = "v22.0"

    # Cal.com
    cal_api_key: Optional[str] = None
    cal_event_type_id: str = "1"
    cal_api_base: str = "https://api.cal.com/v1"
    business_timezone: str = "America/Mexico_City"
    demo_duration_minutes: int = 30

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_price_ids: Dict[str, str] = field(default_factory=dict)
    public_base_url: str = "https://loomi.lat"

    # CRM / ads / LLM
    hubspot_api_key: Optional[str] = None
    meta_pixel_id: Optional[str] = None
    meta_access_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    def price_id(self, plan: StripePlan) -> Optional[str]:
        return self.stripe_price_ids.get(plan.value)

    @classmethod
    def from_env(cls) -> "IntegrationSettings":
        load_dotenv()
        price_ids = {}
        for plan in StripePlan:
            value = os.getenv(f"STRIPE_PRICE_{plan.value.upper()}")
            if value:
                price_ids[plan.value] = value

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///.data/loomi.db"),
            whatsapp_phone_number_id=(
                os.getenv("WHATSAPP_PHONE_NUMBER_ID") or os.getenv("WHATSAPP_PHONE_ID") or None
            ),
            whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN") or None,
            cal_api_key=os.getenv("CAL_API_KEY") or None,
            cal_event_type_id=os.getenv("CAL_EVENT_TYPE_ID", "1"),
            business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/Mexico_City"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_price_ids=price_ids,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "https://loomi.lat"),
            hubspot_api_key=os.getenv("HUBSPOT_API_KEY") or None,
            meta_pixel_id=os.getenv("META_PIXEL_ID") or None,
            meta_access_token=os.getenv("META_ACCESS_TOKEN") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        )
