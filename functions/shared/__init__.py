# Shared utilities for the billing Lambdas
from .constants import PLANS, USABLE_STATUSES
from .errors import APIError
from .response_utils import api_error_response, error_response, success_response

__all__ = [
    "PLANS",
    "USABLE_STATUSES",
    "APIError",
    "api_error_response",
    "error_response",
    "success_response",
]
