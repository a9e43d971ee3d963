"""
Payment workflow.

State machine:
    created -> awaiting_payment -> (completed | cancelled | expired)
    created -> failed

The checkout session is created once per workflow (the workflow id is the
Stripe idempotency key). The workflow then waits for the paymentCompleted
signal, sent by the webhook handler, or cancelPayment, sending reminders
until the link expires.

A paymentCompleted signal that arrives before the session exists skips
checkout creation. Once the session is known, completions for any other
session are ignored.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError

with workflow.unsafe.imports_passed_through():
    from ...models import (
        CheckoutParams,
        CheckoutResult,
        LeadStage,
        PaymentCompleted,
        PaymentInput,
        PaymentResult,
        PaymentStatus,
        SendPaymentLinkParams,
        UpdateLeadParams,
    )
    from ..activities import BillingActivities, PersistenceActivities, WhatsAppActivities
    from ..messages import (
        PAYMENT_FAILED,
        PLAN_DISPLAY_NAMES,
        payment_expired,
        payment_reminder,
        payment_welcome,
    )
    from .common import (
        core_options,
        error_message,
        is_configuration_error,
        log_extra,
        notify,
        set_lead_stage,
        sleep_until,
    )


@workflow.defn
class PaymentWorkflow:
    """
    Checkout for one (lead, plan) pair.

    Signals:
    - paymentCompleted(PaymentCompleted): checkout finished
    - cancelPayment: the lead changed their mind
    """

    def __init__(self) -> None:
        self._status = PaymentStatus.CREATED
        self._checkout: Optional[CheckoutResult] = None
        self._completed: Optional[PaymentCompleted] = None
        self._cancelled = False
        self._reminders_sent = 0

    @workflow.run
    async def run(self, input: PaymentInput) -> PaymentResult:
        workflow_id = workflow.info().workflow_id
        extra = log_extra(input.tenant.tenant_id, input.lead_id, plan=input.plan.value, workflow_id=workflow_id)
        workflow.logger.info("Payment workflow started", **extra)
        lead = input.lead
        plan_name = PLAN_DISPLAY_NAMES[input.plan]
        retry = input.retry

        if self._completed is None:
            if self._cancelled:
                return self._result(PaymentStatus.CANCELLED)
            failed = await self._create_checkout(input, workflow_id, extra)
            if failed is not None:
                return failed

        if not self._settled():
            await self._send_link(input, plan_name, extra)
            await self._wait_for_payment(input, plan_name, extra)

        if self._completed is not None:
            await workflow.execute_activity_method(
                PersistenceActivities.update_lead,
                UpdateLeadParams(
                    lead_id=input.lead_id,
                    email=input.email,
                    subscription_id=self._completed.subscription_id,
                ),
                **core_options(retry),
            )
            await set_lead_stage(input.lead_id, LeadStage.WON, retry)
            await notify(lead.phone, payment_welcome(plan_name), input.credentials, retry)
            workflow.logger.info("Payment completed, lead won", **extra)
            return self._result(PaymentStatus.COMPLETED)

        if self._cancelled:
            workflow.logger.info("Payment cancelled", **extra)
            return self._result(PaymentStatus.CANCELLED)

        await notify(lead.phone, payment_expired(lead), input.credentials, retry)
        workflow.logger.info("Payment link expired", **extra)
        return self._result(PaymentStatus.EXPIRED)

    async def _create_checkout(
        self, input: PaymentInput, workflow_id: str, extra: Dict[str, Any]
    ) -> Optional[PaymentResult]:
        """Create the checkout session; a result is returned only if the workflow is over."""
        lead = input.lead
        try:
            created = await workflow.execute_activity_method(
                BillingActivities.create_checkout_session,
                CheckoutParams(
                    email=input.email,
                    phone=lead.phone,
                    plan=input.plan,
                    lead_id=input.lead_id,
                    workflow_id=workflow_id,
                    name=lead.name,
                ),
                **core_options(input.retry),
            )
        except ActivityError as e:
            error = error_message(e)
            workflow.logger.error(f"Checkout session failed: {error}", **extra)
            await notify(lead.phone, PAYMENT_FAILED, input.credentials, input.retry)
            if is_configuration_error(e):
                self._status = PaymentStatus.FAILED
                raise ApplicationError(error, type="ConfigurationError", non_retryable=True)
            return self._result(PaymentStatus.FAILED, error=error)

        if not created.success or created.checkout is None:
            workflow.logger.warning(f"Checkout session rejected: {created.error}", **extra)
            await notify(lead.phone, PAYMENT_FAILED, input.credentials, input.retry)
            return self._result(PaymentStatus.FAILED, error=created.error)

        self._checkout = created.checkout
        # A completion that arrived while the session was being created
        if self._completed is not None and self._completed.session_id != self._checkout.session_id:
            self._ignore(self._completed)
            self._completed = None

        await workflow.execute_activity_method(
            PersistenceActivities.update_lead,
            UpdateLeadParams(
                lead_id=input.lead_id,
                email=input.email,
                stripe_customer_id=self._checkout.customer_id,
            ),
            **core_options(input.retry),
        )
        return None

    async def _send_link(self, input: PaymentInput, plan_name: str, extra: Dict[str, Any]) -> None:
        sent = await workflow.execute_activity_method(
            WhatsAppActivities.send_payment_link,
            SendPaymentLinkParams(
                phone=input.lead.phone,
                checkout_url=self._checkout.url,
                plan_name=plan_name,
                expiry_hours=input.expiry_hours,
                credentials=input.credentials,
            ),
            **core_options(input.retry),
        )
        if not sent.success:
            workflow.logger.warning(f"Payment link not delivered: {sent.error}", **extra)
        self._status = PaymentStatus.AWAITING_PAYMENT

    async def _wait_for_payment(self, input: PaymentInput, plan_name: str, extra: Dict[str, Any]) -> None:
        """Remind until paid, cancelled or expired."""
        started = workflow.now()
        expires_at = started + timedelta(hours=input.expiry_hours)
        reminder_hours = sorted(h for h in input.reminder_hours if 0 < h < input.expiry_hours)

        for i, hours in enumerate(reminder_hours):
            if await sleep_until(started + timedelta(hours=hours), self._settled):
                return
            final = i == len(reminder_hours) - 1
            await notify(
                input.lead.phone,
                payment_reminder(input.lead, plan_name, self._checkout.url, input.expiry_hours - hours, final),
                input.credentials,
                input.retry,
            )
            self._reminders_sent += 1
            workflow.logger.info(f"Payment reminder sent at {hours:g}h", **extra)

        if not self._settled():
            await sleep_until(expires_at, self._settled)

    def _settled(self) -> bool:
        return self._completed is not None or self._cancelled

    def _ignore(self, payment: PaymentCompleted) -> None:
        workflow.logger.warning(
            f"Ignoring completion for session {payment.session_id}, expected {self._checkout.session_id}"
        )

    def _session_id(self) -> Optional[str]:
        if self._checkout:
            return self._checkout.session_id
        return self._completed.session_id if self._completed else None

    def _result(self, status: PaymentStatus, error: Optional[str] = None) -> PaymentResult:
        self._status = status
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            status=status,
            session_id=self._session_id(),
            subscription_id=self._completed.subscription_id if self._completed else None,
            error=error,
        )

    @workflow.signal(name="paymentCompleted")
    async def payment_completed(self, payment: PaymentCompleted) -> None:
        """
        Checkout finished.

        Before the session exists the completion is held and checked against
        the session id once checkout creation returns.
        """
        if self._checkout and payment.session_id != self._checkout.session_id:
            self._ignore(payment)
            return
        self._completed = payment

    @workflow.signal(name="cancelPayment")
    async def cancel_payment(self) -> None:
        self._cancelled = True

    @workflow.query
    def status(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "session_id": self._session_id(),
            "checkout_url": self._checkout.url if self._checkout else None,
            "short_url": self._checkout.short_url if self._checkout else None,
            "reminders_sent": self._reminders_sent,
        }
