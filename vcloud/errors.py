"""
Centralized error handling for control-plane workflows.

Error Hierarchy:
- CloudError: Expected errors with messages safe to expose to callers
  - TransientObservationError: a re-fetch failed on connectivity, poll loops retry
  - SpuriousRejectionError: the platform rejected a request that should be valid
  - OperationError: a remote task finished in its Error state
  - NotFoundError / AuthenticationError / AuthorizationError
  - TaskTimeoutError / WorkflowCancelledError / RetryExhaustedError
  - ConfigurationError

Usage:
    from vcloud.errors import describe_error, NotFoundError

    raise NotFoundError(f"No such machine: {machine_id}")

    except Exception as e:
        job_error = describe_error(e, "capture image")
"""

import logging
import uuid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes (Expected Errors)
# =============================================================================

class CloudError(Exception):
    """
    Base class for expected control-plane errors.
    Messages are safe to expose to callers.
    """
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class TransientObservationError(CloudError):
    """Status check failed on connectivity (503)."""
    status_code = 503


class SpuriousRejectionError(CloudError):
    """Remote platform rejected a request for an invalid state it is not in (409)."""
    status_code = 409


class OperationError(CloudError):
    """A remote task reached its Error terminal state (502)."""
    status_code = 502

    def __init__(self, message: str, task: Any = None, status_code: int = None):
        super().__init__(message, status_code)
        self.task = task


class NotFoundError(CloudError):
    """Resource not found (404)."""
    status_code = 404


class AuthenticationError(CloudError):
    """Authentication failed (401)."""
    status_code = 401


class AuthorizationError(CloudError):
    """Permission or subscription check failed (403)."""
    status_code = 403


class TaskTimeoutError(CloudError):
    """A poll loop exceeded its deadline (504)."""
    status_code = 504


class WorkflowCancelledError(CloudError):
    """The workflow was cancelled at a suspension point (499)."""
    status_code = 499


class RetryExhaustedError(CloudError):
    """A bounded retry gave up (503)."""
    status_code = 503


class ConfigurationError(CloudError):
    """Client configuration cannot work against the observed endpoint."""
    status_code = 500


# =============================================================================
# Safe Error Description Helper
# =============================================================================

def describe_error(
    e: BaseException,
    operation: str,
    include_error_id: bool = True,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build a safe error description for job records and callers.

    For CloudError subclasses (expected errors):
        - Returns the error message (safe to expose)
        - Uses the exception's status_code
        - Logs at WARNING level

    For all other exceptions (unexpected errors):
        - Returns generic message (never exposes internal details)
        - Returns 500 status code
        - Logs full exception at ERROR level

    Args:
        e: The exception that was caught
        operation: Human-readable description of what failed (e.g., "launch machine")
        include_error_id: Whether to include error_id for support reference
        correlation_id: Workflow correlation ID for log tracing

    Returns:
        Dict with "error", "status_code" and optionally "error_id"
    """
    error_id = str(uuid.uuid4())[:8] if include_error_id else None
    log_extra = {'error_id': error_id} if error_id else {}
    log_prefix = f"[{correlation_id}] " if correlation_id else ""

    if isinstance(e, CloudError):
        logger.warning(f"{log_prefix}{operation}: {e}", extra=log_extra)
        response = {"error": str(e), "status_code": e.status_code}
    else:
        logger.error(
            f"{log_prefix}{operation} failed", exc_info=e, extra=log_extra
        )
        response = {"error": f"{operation} failed", "status_code": 500}

    if error_id:
        response["error_id"] = error_id

    return response
