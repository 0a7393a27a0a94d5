"""Per-attempt processing deadline."""

import os
import time
from typing import Optional

from billing.errors import DeadlineExceeded
from shared.types import LambdaContext

WEBHOOK_DEADLINE_SECONDS = float(os.environ.get("WEBHOOK_DEADLINE_SECONDS", "20"))

# Time kept back from the Lambda timeout to write the response
SAFETY_MARGIN_SECONDS = 2.0


class Deadline:
    """Monotonic deadline checked between reconciliation stages."""

    def __init__(self, seconds: float):
        self.expires_at = time.monotonic() + seconds

    @classmethod
    def from_context(
        cls, context: Optional[LambdaContext] = None, default_seconds: Optional[float] = None
    ) -> "Deadline":
        """Build a deadline from the Lambda context's remaining time.

        Falls back to WEBHOOK_DEADLINE_SECONDS when there is no context, and
        never exceeds it when there is one.
        """
        seconds = WEBHOOK_DEADLINE_SECONDS if default_seconds is None else default_seconds
        get_remaining = getattr(context, "get_remaining_time_in_millis", None)
        if callable(get_remaining):
            remaining = get_remaining() / 1000.0 - SAFETY_MARGIN_SECONDS
            seconds = min(seconds, max(remaining, 0.0))
        return cls(seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, stage: str) -> None:
        if self.expired():
            raise DeadlineExceeded(f"Deadline exceeded before {stage}")
