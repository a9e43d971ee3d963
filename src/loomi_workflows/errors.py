"""
Error taxonomy for Loomi workflows.

- ConfigurationError: missing credentials / price ids. Never retried.
- TransientAPIError: network errors, 5xx and 429 responses. Retried by policy.
- DuplicateWorkflowError: a start was rejected by the id reuse policy.

Expected business failures (slot taken, API rejected the payload) are not
exceptions: activities return them as `OperationResult(success=False)`.
"""

from typing import Any, Dict, Optional


class ConfigurationError(Exception):
    """Required configuration is missing. Aborts the workflow without retry."""


class TransientAPIError(Exception):
    """A third-party call failed in a way worth retrying."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class DuplicateWorkflowError(Exception):
    """A workflow with the same deterministic id already exists."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow already started: {workflow_id}")


# Error type names as seen by Temporal retry policies
NON_RETRYABLE_ERROR_TYPES = [ConfigurationError.__name__]


def raise_for_transient(service: str, status_code: int, body: str) -> None:
    """Raise TransientAPIError for 429 and 5xx responses."""
    if status_code == 429 or status_code >= 500:
        raise TransientAPIError(service, body[:500], status_code=status_code)


def json_body(service: str, response: Any) -> Dict[str, Any]:
    """
    JSON object body of a successful response.

    A 2xx whose body is not a JSON object did not come from the API itself
    (proxy or gateway page), so it is raised as TransientAPIError.
    """
    try:
        data = response.json()
    except ValueError as e:
        raise TransientAPIError(
            service, f"response is not JSON: {response.text[:200]}", status_code=response.status_code
        ) from e
    if not isinstance(data, dict):
        raise TransientAPIError(service, "response is not a JSON object", status_code=response.status_code)
    return data
