"""
Response utilities for Lambda handlers.

Provides consistent response formatting for success and error responses.
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

# CORS configuration for browser callers of the sync endpoint
ALLOWED_ORIGINS: List[str] = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """
    Get CORS headers if origin is allowed.

    Args:
        origin: The Origin header from the request

    Returns:
        Dict with CORS headers if origin is allowed, empty dict otherwise
    """
    if origin and origin in ALLOWED_ORIGINS:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type, Authorization",
            "Access-Control-Allow-Credentials": "true",
        }
    return {}


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def json_response(status_code: int, body: dict, headers: Optional[dict] = None) -> dict:
    """
    Create standardized JSON response.

    Args:
        status_code: HTTP status code
        body: Response body dictionary
        headers: Optional additional headers

    Returns:
        Lambda response dictionary
    """
    response_headers = {"Content-Type": "application/json"}
    if headers:
        response_headers.update(headers)

    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Create an error response.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        headers: Additional response headers
        details: Optional additional error details
        origin: Request Origin header for CORS

    Returns:
        Lambda response dict
    """
    response_headers = dict(get_cors_headers(origin))
    if headers:
        response_headers.update(headers)

    body = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if details:
        body["error"]["details"] = details

    return json_response(status_code, body, response_headers)


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Create a success response.

    Args:
        data: Response body data
        status_code: HTTP status code (default 200)
        headers: Additional response headers
        origin: Request Origin header for CORS

    Returns:
        Lambda response dict
    """
    response_headers = dict(get_cors_headers(origin))
    if headers:
        response_headers.update(headers)

    return json_response(status_code, data, response_headers)
