"""
Exception hierarchy for the sandbox engine.

Every error carries:
- Error code (for client handling)
- HTTP status code (for API responses)
- Context fields (rendered into the response body)
"""
from typing import Any, Dict, Optional


class SandboxError(Exception):
    """Base exception for all engine errors."""

    error_code = "sandbox_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "type": self.__class__.__name__,
        }
        if self.context:
            body["details"] = self.context
        return {"error": body}


class ValidationError(SandboxError):
    """Malformed caller input."""

    error_code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        if field is not None:
            context["field"] = field
        super().__init__(message, **context)
        self.field = field


class NotFoundError(SandboxError):
    """Unknown session, subscription, plan or endpoint."""

    error_code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} {resource_id} not found",
            resource=resource,
            resource_id=resource_id,
        )
        self.resource = resource
        self.resource_id = resource_id


class InvalidStateError(SandboxError):
    """
    Operation is illegal for the record's current lifecycle state.

    ``reason`` tells callers why:
    - ``terminal``: the record already left its only mutable state
    - ``expired``: the session's expiry horizon has passed
    - ``conflict``: a concurrent writer changed the record first
    - ``pending``: a refund was asked for a session that was never paid
    """

    error_code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, reason: str, current_status: Optional[str] = None, **context: Any):
        super().__init__(message, reason=reason, current_status=current_status, **context)
        self.reason = reason
        self.current_status = current_status


class FraudBlockedError(SandboxError):
    """The fraud gate answered ``block``; the session stays pending."""

    error_code = "fraud_blocked"
    http_status = 403

    def __init__(self, session_id: str, score: int, level: str):
        super().__init__(
            f"Payment for session {session_id} blocked by risk checks",
            session_id=session_id,
            score=score,
            level=level,
        )
        self.session_id = session_id
        self.score = score
        self.level = level


class ReviewRequiredError(SandboxError):
    """
    The fraud gate answered ``review``.

    Not a hard failure: the API renders it as 202 with the review id.
    """

    error_code = "review_required"
    http_status = 202

    def __init__(self, session_id: str, review_id: str, score: int, level: str):
        super().__init__(
            f"Payment for session {session_id} is pending manual review",
            session_id=session_id,
            review_id=review_id,
            score=score,
            level=level,
        )
        self.session_id = session_id
        self.review_id = review_id
        self.score = score
        self.level = level


class DeliveryError(SandboxError):
    """Webhook POST failed or timed out. Recorded, never raised to payment callers."""

    error_code = "delivery_failed"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, **context: Any):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class SchedulerError(SandboxError):
    """Processing one subscription failed during a scheduler tick."""

    error_code = "scheduler_error"
    http_status = 500

    def __init__(self, subscription_id: str, phase: str, cause: BaseException):
        super().__init__(
            f"Scheduler {phase} failed for subscription {subscription_id}: {cause}",
            subscription_id=subscription_id,
            phase=phase,
        )
        self.subscription_id = subscription_id
        self.phase = phase
        self.cause = cause
