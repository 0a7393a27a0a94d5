"""
API error family for the subscription endpoints.

Handlers raise these and render them with `api_error_response`; the body
shape matches `error_response` so clients see one envelope everywhere.
"""

from typing import Optional

from shared.response_utils import error_response


class APIError(Exception):
    """Base class for API errors."""

    retry_after: Optional[int] = None

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        return error_response(
            self.status_code,
            self.code,
            self.message,
            details=self.details,
            retry_after=self.retry_after,
        )


class UnauthorizedError(APIError):
    def __init__(self, message: str = "Please log in to continue"):
        super().__init__(code="unauthorized", message=message, status_code=401)


class SubscriptionNotFoundError(APIError):
    """The caller has no subscription to act on."""

    def __init__(self, message: str = "No active subscription found"):
        super().__init__(code="subscription_not_found", message=message, status_code=404)


class SubscriptionExistsError(APIError):
    """The caller already owns a live subscription; one per user."""

    def __init__(self, status: str):
        super().__init__(
            code="subscription_exists",
            message="User already has an active subscription",
            status_code=409,
            details={"status": status},
        )


class InvalidPlanError(APIError):
    def __init__(self, plan_id: str, supported: list[str]):
        super().__init__(
            code="invalid_plan",
            message=f"Invalid plan: {plan_id}. Choose: {', '.join(supported)}",
            status_code=400,
        )


class PaymentRequiredError(APIError):
    """The subscription exists but is not in good standing (e.g. past_due)."""

    def __init__(self, status: str, message: str):
        super().__init__(
            code="payment_required",
            message=message,
            status_code=402,
            details={"status": status},
        )


class QuotaExceededError(APIError):
    """The caller's video quota for the current billing period is used up."""

    def __init__(self, limit: int, period_end: Optional[int] = None):
        details = {"video_limit": limit}
        if period_end:
            details["resets_at"] = period_end
        super().__init__(
            code="quota_exceeded",
            message=f"Monthly limit of {limit} videos reached",
            status_code=429,
            details=details,
        )


class ServiceUnavailableError(APIError):
    """Transient failure; the caller should retry after `retry_after` seconds."""

    def __init__(self, message: str = "Payment system temporarily unavailable", retry_after: int = 5):
        super().__init__(code="temporarily_unavailable", message=message, status_code=503)
        self.retry_after = retry_after


class InvalidRequestError(APIError):
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="invalid_request", message=message, status_code=400, details=details)


class InternalError(APIError):
    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(code="internal_error", message=message, status_code=500)
