"""
Stripe billing activities.

The Stripe SDK is synchronous, so these are plain `def` activities executed
on the worker's thread pool. Stripe errors are classified:
- connection / rate limit / 5xx: TransientAPIError (retried)
- authentication: ConfigurationError (not retried)
- anything else: returned as a failed result
"""

import hashlib
import logging
from typing import Optional

import stripe
from temporalio import activity
from temporalio.exceptions import ApplicationError

from ...errors import ConfigurationError, TransientAPIError
from ...models import (
    CancelSubscriptionParams,
    CheckoutParams,
    CheckoutResult,
    CheckoutSessionResult,
    CustomerParams,
    CustomerResult,
    OperationResult,
    PortalParams,
    SubscriptionInfo,
    UrlResult,
)
from ..config import IntegrationSettings

logger = logging.getLogger(__name__)

SOURCE = "loomi-temporal"


def _classify(e: stripe.StripeError) -> None:
    """Raise the retryable / configuration form of a Stripe error, if it has one."""
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        raise TransientAPIError("stripe", str(e), status_code=e.http_status) from e
    if isinstance(e, stripe.AuthenticationError):
        raise ConfigurationError(f"Stripe authentication failed: {e.user_message or e}") from e
    if e.http_status is not None and e.http_status >= 500:
        raise TransientAPIError("stripe", str(e), status_code=e.http_status) from e


class BillingActivities:
    """Customers, checkout sessions and subscriptions."""

    def __init__(self, settings: IntegrationSettings, client: Optional[stripe.StripeClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.settings.stripe_secret_key:
                raise ConfigurationError("STRIPE_SECRET_KEY environment variable is required")
            self._client = stripe.StripeClient(self.settings.stripe_secret_key)
        return self._client

    def _price_id(self, params: CheckoutParams) -> str:
        price_id = self.settings.price_id(params.plan)
        if not price_id:
            raise ConfigurationError(f"STRIPE_PRICE_{params.plan.value.upper()} environment variable is required")
        return price_id

    def _find_or_create_customer(self, params: CustomerParams) -> CustomerResult:
        existing = self.client.customers.list(params={"email": params.email, "limit": 1})
        if existing.data:
            return CustomerResult(customer_id=existing.data[0].id, is_new=False)

        create = {"email": params.email, "phone": params.phone, "metadata": {"source": SOURCE}}
        if params.name:
            create["name"] = params.name
        customer = self.client.customers.create(
            params=create,
            options={"idempotency_key": f"customer-{params.email.lower()}"},
        )
        logger.info(f"Stripe customer created: {customer.id}")
        return CustomerResult(customer_id=customer.id, is_new=True)

    @activity.defn(name="create_or_get_customer")
    def create_or_get_customer(self, params: CustomerParams) -> CustomerResult:
        """Find a customer by email, creating one only when none exists."""
        try:
            return self._find_or_create_customer(params)
        except stripe.StripeError as e:
            _classify(e)
            raise ApplicationError(str(e), type="StripeError", non_retryable=True) from e

    @activity.defn(name="create_checkout_session")
    def create_checkout_session(self, params: CheckoutParams) -> CheckoutSessionResult:
        """
        Create a subscription checkout session.

        lead_id, plan and workflow_id go into the session metadata so the
        webhook can be correlated back to the workflow. The workflow id is
        also the idempotency key: a retried activity gets the same session.
        """
        price_id = self._price_id(params)
        base_url = self.settings.public_base_url.rstrip("/")
        metadata = {
            "lead_id": params.lead_id,
            "plan": params.plan.value,
            "workflow_id": params.workflow_id,
            "source": SOURCE,
        }
        try:
            customer = self._find_or_create_customer(
                CustomerParams(email=params.email, phone=params.phone, name=params.name)
            )
            session = self.client.checkout.sessions.create(
                params={
                    "customer": customer.customer_id,
                    "mode": "subscription",
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": params.success_url or f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": params.cancel_url or f"{base_url}/payment/cancel",
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                },
                options={"idempotency_key": f"checkout-{params.workflow_id}"},
            )
        except stripe.StripeError as e:
            _classify(e)
            logger.warning(f"Stripe rejected checkout for lead {params.lead_id}: {e}")
            return CheckoutSessionResult(success=False, error=str(e))

        if not session.url:
            return CheckoutSessionResult(success=False, error="Checkout session has no URL")

        short_code = hashlib.sha256(session.id.encode()).hexdigest()[:10]
        return CheckoutSessionResult(
            success=True,
            checkout=CheckoutResult(
                url=session.url,
                short_url=f"{base_url}/pay/{short_code}",
                session_id=session.id,
                customer_id=customer.customer_id,
            ),
        )

    @activity.defn(name="get_subscription")
    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionInfo]:
        try:
            sub = self.client.subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as e:
            _classify(e)
            raise ApplicationError(str(e), type="StripeError", non_retryable=True) from e
        customer = sub.customer if isinstance(sub.customer, str) else getattr(sub.customer, "id", None)
        return SubscriptionInfo(
            id=sub.id,
            status=sub.status,
            customer_id=customer,
            cancel_at_period_end=bool(sub.cancel_at_period_end),
        )

    @activity.defn(name="cancel_subscription")
    def cancel_subscription(self, params: CancelSubscriptionParams) -> OperationResult:
        """Cancel now, or at the end of the current billing period."""
        try:
            if params.immediately:
                self.client.subscriptions.cancel(params.subscription_id)
            else:
                self.client.subscriptions.update(
                    params.subscription_id,
                    params={"cancel_at_period_end": True},
                )
        except stripe.StripeError as e:
            _classify(e)
            return OperationResult(success=False, error=str(e))
        return OperationResult(success=True, id=params.subscription_id)

    @activity.defn(name="create_billing_portal_session")
    def create_billing_portal_session(self, params: PortalParams) -> UrlResult:
        base_url = self.settings.public_base_url.rstrip("/")
        try:
            session = self.client.billing_portal.sessions.create(
                params={
                    "customer": params.customer_id,
                    "return_url": params.return_url or f"{base_url}/dashboard/settings",
                }
            )
        except stripe.StripeError as e:
            _classify(e)
            return UrlResult(success=False, error=str(e))
        return UrlResult(success=True, url=session.url)
