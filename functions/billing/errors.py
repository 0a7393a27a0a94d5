"""
Reconciliation error taxonomy.

`retryable` tells the webhook handler whether to fail the response (so the
provider redelivers) or to acknowledge the delivery.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""

    retryable = False

    def __init__(self, message: str, *, event_id: Optional[str] = None):
        self.event_id = event_id
        super().__init__(message)


class SignatureInvalid(ReconciliationError):
    """Webhook signature missing, forged, or outside the tolerance window."""


class MalformedEvent(ReconciliationError):
    """Verified payload that is not a usable provider event."""


class TransientProviderError(ReconciliationError):
    """Provider unreachable, rate limited, or returned a 5xx."""

    retryable = True


class LockTimeout(TransientProviderError):
    """Could not acquire the subscription lock within the allowed wait."""


class DeadlineExceeded(TransientProviderError):
    """Processing attempt ran past its deadline and was aborted."""


class ConcurrentModification(TransientProviderError):
    """Conditional write lost to a concurrent writer (stale version or owner pointer)."""


class ProviderNotConfigured(ReconciliationError):
    """Provider credentials are missing from Secrets Manager."""


class ProviderNotFound(ReconciliationError):
    """Provider has no object with the requested id."""


class ProviderRejected(ReconciliationError):
    """Provider refused the request for a non-transient reason (bad params, card declined)."""

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        code: Optional[str] = None,
        payment_failed: bool = False,
    ):
        self.user_message = user_message
        self.code = code
        self.payment_failed = payment_failed
        super().__init__(message)


class PermanentConflict(ReconciliationError):
    """Event cannot be reconciled and retrying will not help.

    The event is still marked processed; operators are alerted instead.
    """

    def __init__(self, message: str, *, reason: str = "unresolvable", event_id: Optional[str] = None):
        self.reason = reason
        super().__init__(message, event_id=event_id)

