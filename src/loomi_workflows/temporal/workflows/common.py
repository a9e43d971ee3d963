"""
Helpers shared by the workflow definitions.

Only deterministic code lives here: activity options, durable sleeps
driven by workflow.now(), and small wrappers around activity calls.
Activity options come from the RetryPlan in each workflow's input.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError, FailureError

with workflow.unsafe.imports_passed_through():
    from ...errors import NON_RETRYABLE_ERROR_TYPES
    from ...models import (
        ActivityRetry,
        LeadStage,
        RetryPlan,
        SendMessageParams,
        TenantCredentials,
        UpdateStageParams,
    )
    from ..activities import PersistenceActivities, WhatsAppActivities


def _options(retry: ActivityRetry, overrides: Dict[str, Any]) -> Dict[str, Any]:
    options = {
        "start_to_close_timeout": timedelta(seconds=retry.start_to_close_timeout),
        "retry_policy": RetryPolicy(
            initial_interval=timedelta(seconds=retry.initial_interval),
            backoff_coefficient=retry.backoff_coefficient,
            maximum_interval=timedelta(seconds=retry.max_interval),
            maximum_attempts=retry.max_attempts,
            non_retryable_error_types=NON_RETRYABLE_ERROR_TYPES,
        ),
    }
    options.update(overrides)
    return options


def core_options(retry: RetryPlan, **overrides: Any) -> Dict[str, Any]:
    """Activity options for messaging, calendar, billing and persistence."""
    return _options(retry.core, overrides)


def integration_options(retry: RetryPlan, **overrides: Any) -> Dict[str, Any]:
    """Activity options for CRM, ad tracking and LLM calls."""
    return _options(retry.integration, overrides)


def aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def sleep_until(target: datetime, interrupted: Callable[[], bool]) -> bool:
    """
    Durable sleep until `target` (workflow time).

    Returns True if `interrupted()` became true first, False when the timer
    fired. A target in the past returns immediately.
    """
    remaining = aware(target) - workflow.now()
    if remaining <= timedelta(0):
        return interrupted()
    try:
        await workflow.wait_condition(interrupted, timeout=remaining)
        return True
    except asyncio.TimeoutError:
        return False


def error_message(err: BaseException) -> str:
    """Innermost failure message of an activity / child error."""
    cause = err
    while isinstance(cause, FailureError) and cause.cause is not None:
        cause = cause.cause
    return str(cause.message if isinstance(cause, FailureError) else cause)


def is_configuration_error(err: BaseException) -> bool:
    cause = err.cause if isinstance(err, ActivityError) else err
    return isinstance(cause, ApplicationError) and cause.type in NON_RETRYABLE_ERROR_TYPES


def log_extra(tenant_id: str, lead_id: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
    return {"extra": {"tenant_id": tenant_id, "lead_id": lead_id, **fields}}


async def send_text(phone: str, text: str, credentials: Optional[TenantCredentials], retry: RetryPlan) -> bool:
    """Send a text message; False if the API rejected it."""
    result = await workflow.execute_activity_method(
        WhatsAppActivities.send_message,
        SendMessageParams(phone=phone, text=text, credentials=credentials),
        **core_options(retry),
    )
    return result.success


async def notify(phone: str, text: str, credentials: Optional[TenantCredentials], retry: RetryPlan) -> None:
    """Best-effort message: failures are logged, never raised."""
    try:
        if not await send_text(phone, text, credentials, retry):
            workflow.logger.warning("Notification rejected by WhatsApp API")
    except ActivityError as e:
        workflow.logger.warning(f"Notification failed: {error_message(e)}")


async def signal_external(workflow_id: str, signal: str, arg: Any = None) -> bool:
    """Signal another workflow; False if it is gone or already closed."""
    handle = workflow.get_external_workflow_handle(workflow_id)
    try:
        if arg is None:
            await handle.signal(signal)
        else:
            await handle.signal(signal, arg)
        return True
    except FailureError as e:
        workflow.logger.info(f"Signal {signal} to {workflow_id} not delivered: {e}")
        return False


async def set_lead_stage(lead_id: str, stage: LeadStage, retry: RetryPlan) -> bool:
    """Move a lead to `stage`; False (and a warning) if the store refused."""
    result = await workflow.execute_activity_method(
        PersistenceActivities.update_lead_stage,
        UpdateStageParams(lead_id=lead_id, stage=stage),
        **core_options(retry),
    )
    if not result.success:
        workflow.logger.warning(f"Lead {lead_id} not moved to {stage.value}: {result.error}")
    return result.success
