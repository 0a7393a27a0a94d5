"""
Structured logging utilities for CloudWatch Logs Insights.

Every log line carries the API Gateway request id and, while a webhook is
being reconciled, the provider event id, so a single delivery can be traced
across the verifier, the engine and the ledger.
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with correlation ids and `extra` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }
        if event_id_var.get():
            entry["event_id"] = event_id_var.get()

        entry.update({k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Install the JSON formatter on the root logger.

    Lambda reuses containers, so existing handlers are replaced rather than
    stacked on every invocation.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    return root


def set_request_id(event: dict) -> str:
    """
    Bind the request id for this invocation and clear any stale event id.

    Prefers the API Gateway request id, then an `X-Request-Id` header, and
    generates a UUID when neither is present.
    """
    headers = event.get("headers") or {}
    request_id = (
        (event.get("requestContext") or {}).get("requestId")
        or headers.get("x-request-id")
        or headers.get("X-Request-Id")
        or str(uuid.uuid4())
    )
    request_id_var.set(request_id)
    event_id_var.set("")
    return request_id


def set_event_id(event_id: Optional[str]) -> None:
    """Bind the provider event id being reconciled to subsequent log lines."""
    event_id_var.set(event_id or "")


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
    user_id: Optional[str] = None,
) -> None:
    logger.info(
        f"{method} {path} -> {status_code}",
        extra={
            "http_method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 1),
            "user_id": user_id or "anonymous",
        },
    )


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Report a Stripe (or other outbound) call; failures log at WARNING."""
    outcome = "success" if success else "failed"
    logger.log(
        logging.INFO if success else logging.WARNING,
        f"External call to {service}: {operation} -> {outcome}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": round(latency_ms, 1),
            "error": error,
        },
    )
