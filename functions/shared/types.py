"""
Type hints for the Lambda runtime and the JSON views the API returns.
"""

from typing import Optional, TypedDict


class LambdaContext:
    """Lambda context object (simplified type hints)."""

    function_name: str
    function_version: str
    invoked_function_arn: str
    memory_limit_in_mb: int
    aws_request_id: str
    log_group_name: str
    log_stream_name: str

    def get_remaining_time_in_millis(self) -> int:
        """Get remaining execution time in milliseconds."""
        ...


class UsageView(TypedDict):
    """Video quota usage returned to the dashboard."""

    video_count: int
    video_limit: int
    remaining: int
    usage_percentage: float
    can_create_video: bool


class SubscriptionView(TypedDict, total=False):
    """Public projection of a Subscription record."""

    id: str
    plan_id: str
    plan_name: str
    status: str
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool
    canceled_at: Optional[int]
    usage: UsageView
    updated_at: str
