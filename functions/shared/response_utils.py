"""
API Gateway proxy responses for the billing handlers.

Every body is JSON; DynamoDB Decimals are rendered as int/float. Browser
callers on the allow-listed origins get credentialed CORS headers so the
session cookie travels with the request.
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

_PROD_ORIGINS = [
    "https://app.edgeavatar.ai",
    "https://edgeavatar.ai",
]
_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]
ALLOWED_ORIGINS: List[str] = _PROD_ORIGINS + (_DEV_ORIGINS if os.environ.get("ALLOW_DEV_CORS") == "true" else [])

# Idempotency-Key lets the dashboard retry subscription creation safely
_ALLOWED_REQUEST_HEADERS = "Content-Type, Authorization, Idempotency-Key"


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for an allow-listed origin, otherwise none."""
    if not origin or origin not in ALLOWED_ORIGINS:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": _ALLOWED_REQUEST_HEADERS,
        "Access-Control-Allow-Credentials": "true",
    }


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def json_response(status_code: int, body: Any, headers: Optional[dict] = None) -> dict:
    """Bare JSON response with no CORS handling (server-to-server callers)."""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **(headers or {})},
        "body": json.dumps(body, default=decimal_default),
    }


def _browser_response(status_code: int, body: Any, origin: Optional[str], headers: Optional[dict]) -> dict:
    return json_response(status_code, body, {**get_cors_headers(origin), **(headers or {})})


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    return _browser_response(status_code, data, origin, headers)


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    retry_after: Optional[int] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Error envelope shared by every handler.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        headers: Additional response headers
        details: Optional structured details (limits, reasons)
        retry_after: Seconds for the Retry-After header on 429/503
        origin: Request Origin header for CORS

    Returns:
        Lambda response dict
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details

    extra = dict(headers or {})
    if retry_after is not None:
        extra["Retry-After"] = str(retry_after)

    return _browser_response(status_code, {"error": error}, origin, extra)


def api_error_response(error, origin: Optional[str] = None) -> dict:
    """Render an APIError with CORS headers for the calling origin."""
    response = error.to_response()
    response["headers"].update(get_cors_headers(origin))
    return response
