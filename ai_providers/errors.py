"""Exception types raised or delivered by ai-providers."""

import json
from enum import Enum
from typing import Any, Optional


class ProviderError(Exception):
    """Human-readable error returned by a provider backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RequestValidationError(ValueError):
    """Request rejected before any network call was made."""
    pass


class CompatibilityError(Exception):
    """Caller requires a newer interface version than this service implements."""

    def __init__(self, required_version: int, current_version: int):
        super().__init__(
            f"AI providers service must be updated: interface version "
            f"{required_version} required, {current_version} available"
        )
        self.required_version = required_version
        self.current_version = current_version


class PerformanceMetricsError(str, Enum):
    CALCULATION_FAILED = "CALCULATION_FAILED"
    PROVIDER_NOT_SUPPORTED = "PROVIDER_NOT_SUPPORTED"
    DATA_INCOMPLETE = "DATA_INCOMPLETE"
    TIMEOUT = "TIMEOUT"


class PerformanceMetricsException(Exception):
    """
    Delivered to performance callbacks, never raised to the caller.

    `code` is machine readable; `details` carries the wrapped error or the
    provider context that caused it.
    """

    def __init__(self, code: PerformanceMetricsError, message: str, details: Any = None):
        super().__init__(message)
        self.code = code
        self.details = details


def parse_error_message(status_code: int, body: bytes) -> str:
    """Extract a user-friendly error message from an error response body."""
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return f"HTTP {status_code}: {text[:200]}"
    # OpenAI-style {"error": {"message": "..."}}, Ollama-style {"error": "..."}
    if isinstance(data, dict):
        error = data.get("error", {})
        if isinstance(error, dict):
            message = error.get("message", "")
            if message:
                return message
        elif isinstance(error, str) and error:
            return error
    return f"HTTP {status_code}: {text[:200]}"
