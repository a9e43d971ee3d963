"""
Tests for environment configuration.
"""

import base64

import pytest
from temporalio.service import TLSConfig

from loomi_workflows.models import StripePlan
from loomi_workflows.temporal.config import IntegrationSettings, RetrySettings, TemporalConfig


@pytest.fixture
def clean_env(monkeypatch):
    """No .env file and no Loomi variables."""
    monkeypatch.setattr("loomi_workflows.temporal.config.load_dotenv", lambda: None)
    for name in (
        "TEMPORAL_ADDRESS",
        "TEMPORAL_NAMESPACE",
        "TEMPORAL_API_KEY",
        "TEMPORAL_CLIENT_CERT_PATH",
        "TEMPORAL_CLIENT_KEY_PATH",
        "TEMPORAL_CLIENT_CERT",
        "TEMPORAL_CLIENT_KEY",
        "ENTERPRISE_TENANT_IDS",
        "PAYMENT_EXPIRY_HOURS",
        "ACTIVITY_MAX_ATTEMPTS",
        "INTEGRATION_MAX_ATTEMPTS",
        "WHATSAPP_PHONE_NUMBER_ID",
        "WHATSAPP_PHONE_ID",
        "STRIPE_PRICE_STARTER",
        "STRIPE_PRICE_GROWTH",
        "STRIPE_PRICE_BUSINESS",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestTemporalConfig:
    """Tests for TemporalConfig.from_env and TLS modes."""

    def test_defaults(self, clean_env):
        config = TemporalConfig.from_env()

        assert config.target == "localhost:7233"
        assert config.namespace == "default"
        assert config.enterprise_tenant_ids == ()
        assert config.payment_expiry_hours == 24.0
        assert config.tls() is False

    def test_api_key_enables_tls(self, clean_env):
        clean_env.setenv("TEMPORAL_ADDRESS", "ns.acct.tmprl.cloud:7233")
        clean_env.setenv("TEMPORAL_API_KEY", "secret")

        config = TemporalConfig.from_env()

        assert config.target == "ns.acct.tmprl.cloud:7233"
        assert config.tls() is True

    def test_base64_certificate_pair(self, clean_env):
        clean_env.setenv("TEMPORAL_CLIENT_CERT", base64.b64encode(b"CERT").decode())
        clean_env.setenv("TEMPORAL_CLIENT_KEY", base64.b64encode(b"KEY").decode())

        tls = TemporalConfig.from_env().tls()

        assert isinstance(tls, TLSConfig)
        assert tls.client_cert == b"CERT"
        assert tls.client_private_key == b"KEY"

    def test_certificate_files_win_over_base64(self, clean_env, tmp_path):
        (tmp_path / "client.pem").write_bytes(b"FILE-CERT")
        (tmp_path / "client.key").write_bytes(b"FILE-KEY")
        clean_env.setenv("TEMPORAL_CLIENT_CERT_PATH", str(tmp_path / "client.pem"))
        clean_env.setenv("TEMPORAL_CLIENT_KEY_PATH", str(tmp_path / "client.key"))
        clean_env.setenv("TEMPORAL_CLIENT_CERT", base64.b64encode(b"CERT").decode())
        clean_env.setenv("TEMPORAL_CLIENT_KEY", base64.b64encode(b"KEY").decode())

        assert TemporalConfig.from_env().client_cert_pair() == (b"FILE-CERT", b"FILE-KEY")

    def test_enterprise_allow_list(self, clean_env):
        clean_env.setenv("ENTERPRISE_TENANT_IDS", "acme, globex,,")

        assert TemporalConfig.from_env().enterprise_tenant_ids == ("acme", "globex")


class TestIntegrationSettings:

    def test_price_ids_per_plan(self, clean_env):
        clean_env.setenv("STRIPE_PRICE_GROWTH", "price_g")

        settings = IntegrationSettings.from_env()

        assert settings.price_id(StripePlan.GROWTH) == "price_g"
        assert settings.price_id(StripePlan.STARTER) is None

    def test_legacy_phone_id_variable(self, clean_env):
        clean_env.setenv("WHATSAPP_PHONE_ID", "PN-legacy")

        assert IntegrationSettings.from_env().whatsapp_phone_number_id == "PN-legacy"


class TestRetrySettings:

    def test_defaults(self, clean_env):
        retry = RetrySettings.from_env()

        assert retry.default_max_attempts == 3
        assert retry.default_initial_interval == 1.0
        assert retry.integration_max_attempts == 5
        assert retry.integration_initial_interval == 2.0

    def test_attempts_from_env(self, clean_env):
        clean_env.setenv("ACTIVITY_MAX_ATTEMPTS", "7")
        clean_env.setenv("INTEGRATION_MAX_ATTEMPTS", "2")

        retry = RetrySettings.from_env()

        assert retry.default_max_attempts == 7
        assert retry.integration_max_attempts == 2

    def test_plan_carries_both_groups(self, clean_env):
        plan = RetrySettings(default_max_attempts=7, integration_start_to_close_timeout=90).plan()

        assert plan.core.max_attempts == 7
        assert plan.core.initial_interval == 1.0
        assert plan.integration.max_attempts == 5
        assert plan.integration.start_to_close_timeout == 90
