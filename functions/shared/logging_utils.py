"""
Structured logging utilities for CloudWatch Logs Insights.
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context variable for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    )
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging for Lambda.

    Call this at the start of your handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    return root_logger


def set_request_id(event: dict) -> str:
    """
    Extract or generate request ID and set in context.

    Args:
        event: Lambda event

    Returns:
        Request ID string
    """
    request_id = (event.get("requestContext") or {}).get("requestId")

    if not request_id:
        headers = event.get("headers") or {}
        request_id = headers.get("x-request-id") or headers.get("X-Request-Id")

    if not request_id:
        request_id = str(uuid.uuid4())

    request_id_var.set(request_id)
    return request_id


def billing_context(
    event_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    user_id: Optional[str] = None,
    operation: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Build the ``extra`` dict for billing log lines, dropping empty values.

    Example:
        logger.info("User lookup completed", extra=billing_context(
            event_id=event.id, customer_id="cus_1", operation="user_lookup"))
    """
    context = {
        "stripe_event_id": event_id,
        "stripe_customer_id": customer_id,
        "user_id": user_id,
        "operation": operation,
        **fields,
    }
    return {k: v for k, v in context.items() if v is not None}


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log external service call."""
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "external_operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        },
    )
