"""Error taxonomy for query policy decisions.

Errors fall in three groups:
- PolicyError: a programming error (malformed key, unknown override field).
  Fails fast and is never retried.
- ClientError: an HTTP-like 4xx failure. Never retried.
- TransientError: any other failure (network, 5xx) surfaced after the retry
  budget is exhausted.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class QueryPolicyError(Exception):
    """Base exception for query policy errors."""

    pass


class PolicyError(QueryPolicyError):
    """Malformed key or policy configuration."""

    pass


class ClientError(QueryPolicyError):
    """Request rejected with an HTTP-like 4xx status."""

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"Client error (status {status})")
        self.status = status


class TransientError(QueryPolicyError):
    """Failure that survived every retry attempt."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


def _coerce_status(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def status_of(error: Any) -> Optional[int]:
    """
    Extract an HTTP-like status code from an error object.

    Checks, in order: ``error.status``, ``error.status_code``,
    ``error.response.status_code`` and ``error.response.status``. Plain
    mappings such as ``{"status": 404}`` are accepted as well, which is how
    tests and non-HTTP loaders usually describe failures.

    Args:
        error: Exception or error payload

    Returns:
        Status code, or None when the error carries none
    """
    if error is None:
        return None

    if isinstance(error, Mapping):
        for field in ("status", "status_code"):
            status = _coerce_status(error.get(field))
            if status is not None:
                return status
        response = error.get("response")
    else:
        for attr in ("status", "status_code"):
            status = _coerce_status(getattr(error, attr, None))
            if status is not None:
                return status
        # httpx.HTTPStatusError raises RuntimeError when .response is unset
        try:
            response = getattr(error, "response", None)
        except RuntimeError:
            response = None

    if response is None:
        return None
    if isinstance(response, Mapping):
        return _coerce_status(response.get("status_code", response.get("status")))
    for attr in ("status_code", "status"):
        status = _coerce_status(getattr(response, attr, None))
        if status is not None:
            return status
    return None


def is_client_error(error: Any) -> bool:
    """Return True when the error carries a status in [400, 500)."""
    status = status_of(error)
    return status is not None and 400 <= status < 500


def error_message(error: Any) -> str:
    """
    Human-readable message for a failed query.

    Prefers the server's ``{"message": ...}`` body, then the exception text.
    """
    if error is None:
        return "An unexpected error occurred"

    response = error.get("response") if isinstance(error, Mapping) else None
    if response is None and not isinstance(error, Mapping):
        try:
            response = getattr(error, "response", None)
        except RuntimeError:
            response = None

    if response is not None:
        body: Any = None
        if isinstance(response, Mapping):
            body = response.get("data")
        else:
            json_method = getattr(response, "json", None)
            if callable(json_method):
                try:
                    body = json_method()
                except ValueError:
                    body = None
        if isinstance(body, Mapping) and body.get("message"):
            return str(body["message"])

    if isinstance(error, Mapping):
        message = error.get("message")
        return str(message) if message else "An unexpected error occurred"

    return str(error) or "An unexpected error occurred"
