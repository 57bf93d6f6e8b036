"""
LLM error taxonomy.

Every failure that crosses the analyzer boundary is an LLMError carrying a
type, a numeric code, user-facing message and recovery details. Raw
exceptions from SDKs are classified by classify_error() before anyone
decides whether to retry, fall back to rule-based insights, or propagate.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    # Configuration
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INVALID_API_KEY = "INVALID_API_KEY"
    INVALID_MODEL = "INVALID_MODEL"
    MISSING_PROVIDER = "MISSING_PROVIDER"
    # Network
    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"
    # API
    RATE_LIMIT = "RATE_LIMIT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    # Processing
    INVALID_RESPONSE = "INVALID_RESPONSE"
    PARSING_ERROR = "PARSING_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    # System
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TEMPORARY_UNAVAILABLE = "TEMPORARY_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorCode:
    API_KEY_MISSING = 1003
    API_KEY_INVALID = 1004
    MODEL_INVALID = 1005
    PROVIDER_UNSUPPORTED = 1006
    CONFIG_INVALID = 1002
    NETWORK_TIMEOUT = 1101
    CONNECTION_REFUSED = 1102
    RATE_LIMITED = 1201
    QUOTA_EXCEEDED = 1202
    UNAUTHORIZED_ACCESS = 1203
    FORBIDDEN_ACCESS = 1204
    RESOURCE_NOT_FOUND = 1205
    RESPONSE_INVALID = 1301
    RESPONSE_EMPTY = 1302
    PARSING_FAILED = 1303
    VALIDATION_FAILED = 1304
    SERVICE_UNAVAILABLE = 1402
    UNKNOWN_FAILURE = 1499


RECOVERABLE_TYPES = frozenset(
    {
        ErrorType.RATE_LIMIT,
        ErrorType.TIMEOUT,
        ErrorType.NETWORK_ERROR,
        ErrorType.CONNECTION_FAILED,
        ErrorType.TEMPORARY_UNAVAILABLE,
    }
)

# Errors where the caller should continue with rule-based insights only
FALLBACK_TYPES = frozenset(
    {
        ErrorType.QUOTA_EXCEEDED,
        ErrorType.FORBIDDEN,
        ErrorType.INVALID_MODEL,
        ErrorType.CONFIGURATION_ERROR,
        ErrorType.PARSING_ERROR,
        ErrorType.UNKNOWN_ERROR,
    }
)

_NON_RETRYABLE_MARKERS = ("unauthorized", "invalid api key", "configuration", "validation", "not found")


class LLMError(RuntimeError):
    """Classified failure from the LLM subsystem."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN_ERROR,
        code: int = ErrorCode.UNKNOWN_FAILURE,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.code = code
        self.details = details or {}
        self.timestamp = datetime.now(UTC).isoformat()

    @property
    def recoverable(self) -> bool:
        return self.error_type in RECOVERABLE_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "type": self.error_type.value,
            "code": self.code,
            "details": {k: v for k, v in self.details.items() if k != "traceback"},
            "timestamp": self.timestamp,
            "recoverable": self.recoverable,
        }


class LLMParseError(LLMError):
    """Provider output could not be turned into insight sections."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorType.PARSING_ERROR, ErrorCode.PARSING_FAILED, details)


class LLMTimeoutError(LLMError):
    """A provider call did not finish within the configured timeout."""

    def __init__(self, message: str = "LLM request timeout", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorType.TIMEOUT, ErrorCode.NETWORK_TIMEOUT, details)


class ProviderInitializationError(RuntimeError):
    """Raised when a provider SDK cannot be initialized."""


def _categorize(message: str) -> tuple[ErrorType, int, str, dict[str, Any]]:
    if "api key" in message or "unauthorized" in message:
        if "missing" in message or "required" in message:
            return (
                ErrorType.INVALID_API_KEY,
                ErrorCode.API_KEY_MISSING,
                "API key is missing. Please check your configuration.",
                {"suggestion": "Add your API key to the environment.", "config_field": "api_key"},
            )
        return (
            ErrorType.UNAUTHORIZED,
            ErrorCode.UNAUTHORIZED_ACCESS,
            "Invalid API key. Please check your credentials.",
            {"suggestion": "Verify the API key and its permissions.", "config_field": "api_key"},
        )

    if "rate limit" in message or "too many requests" in message or "resource_exhausted" in message:
        return (
            ErrorType.RATE_LIMIT,
            ErrorCode.RATE_LIMITED,
            "API rate limit exceeded. Please wait before trying again.",
            {"suggestion": "Wait a few minutes before retrying.", "retry_after": extract_retry_after(message)},
        )

    if "quota" in message or "billing" in message or "credits" in message:
        return (
            ErrorType.QUOTA_EXCEEDED,
            ErrorCode.QUOTA_EXCEEDED,
            "API quota exceeded. Please check your billing or upgrade your plan.",
            {"suggestion": "Check the provider usage dashboard."},
        )

    if "timeout" in message or "timed out" in message:
        return (
            ErrorType.TIMEOUT,
            ErrorCode.NETWORK_TIMEOUT,
            "Request timed out. The AI service is taking too long to respond.",
            {"suggestion": "Retry with a smaller dataset or a longer timeout.", "config_field": "timeout"},
        )

    if "network" in message or "connection" in message or "econnrefused" in message:
        return (
            ErrorType.CONNECTION_FAILED,
            ErrorCode.CONNECTION_REFUSED,
            "Cannot connect to the AI service.",
            {"suggestion": "Check network connectivity and try again."},
        )

    if "model" in message and ("not found" in message or "invalid" in message):
        return (
            ErrorType.INVALID_MODEL,
            ErrorCode.MODEL_INVALID,
            "The specified AI model is not available or invalid.",
            {"suggestion": "Check the model name for this provider.", "config_field": "model"},
        )

    if "parse" in message or "json" in message or "invalid response" in message:
        return (
            ErrorType.PARSING_ERROR,
            ErrorCode.PARSING_FAILED,
            "The AI service returned an invalid response format.",
            {"suggestion": "This is usually temporary. Please try again."},
        )

    if "forbidden" in message or "403" in message:
        return (
            ErrorType.FORBIDDEN,
            ErrorCode.FORBIDDEN_ACCESS,
            "Access denied. The credentials lack the required permissions.",
            {"suggestion": "Check API key permissions."},
        )

    if "unavailable" in message or "overloaded" in message or "503" in message or "502" in message:
        return (
            ErrorType.TEMPORARY_UNAVAILABLE,
            ErrorCode.SERVICE_UNAVAILABLE,
            "The AI service is temporarily unavailable.",
            {"suggestion": "Please try again in a few minutes."},
        )

    if "configuration" in message or "validation" in message:
        return (
            ErrorType.CONFIGURATION_ERROR,
            ErrorCode.CONFIG_INVALID,
            "LLM configuration is invalid.",
            {"suggestion": "Review the provider configuration."},
        )

    return (
        ErrorType.UNKNOWN_ERROR,
        ErrorCode.UNKNOWN_FAILURE,
        "An unexpected error occurred during AI analysis.",
        {"suggestion": "Please try again. If the problem persists, contact support."},
    )


def classify_error(error: BaseException, context: str = "unknown") -> LLMError:
    """
    Turn any exception into a classified LLMError.

    Already-classified errors pass through unchanged. Provider
    initialization failures are configuration errors.

    Args:
        error: Exception raised by a provider, parser or the analyzer itself
        context: Where the error happened (for details)

    Returns:
        LLMError with type, code and recovery details
    """
    if isinstance(error, LLMError):
        return error

    original = str(error) or type(error).__name__
    if isinstance(error, ProviderInitializationError):
        error_type, code, user_message, details = (
            ErrorType.CONFIGURATION_ERROR,
            ErrorCode.CONFIG_INVALID,
            "The AI provider could not be initialized.",
            {"suggestion": "Check the provider SDK installation and project settings."},
        )
    else:
        error_type, code, user_message, details = _categorize(original.lower())
    details = {
        **details,
        "original_message": original,
        "exception_type": type(error).__name__,
        "context": context,
    }
    return LLMError(user_message, error_type, code, details)


def extract_retry_after(message: str) -> int | None:
    """Seconds to wait, from 'retry after N seconds' style messages."""
    match = re.search(r"retry.*?(\d+).*?second", message, re.IGNORECASE)
    if match:
        return int(match.group(1))
    if "rate limit" in message.lower():
        return 60
    return None


def is_non_retryable(error: BaseException) -> bool:
    """Authentication, configuration, validation and not-found errors abort at once."""
    if isinstance(error, LLMError):
        if error.error_type in (
            ErrorType.INVALID_API_KEY,
            ErrorType.UNAUTHORIZED,
            ErrorType.CONFIGURATION_ERROR,
            ErrorType.VALIDATION_ERROR,
            ErrorType.NOT_FOUND,
            ErrorType.INVALID_MODEL,
        ):
            return True
        message = str(error.details.get("original_message", error.message)).lower()
    else:
        message = str(error).lower()
    return any(marker in message for marker in _NON_RETRYABLE_MARKERS)


def should_fallback(error: LLMError) -> bool:
    """True when the caller should proceed with rule-based insights only."""
    return error.error_type in FALLBACK_TYPES


def get_retry_strategy(error: LLMError) -> dict[str, Any] | None:
    if not error.recoverable:
        return None

    if error.error_type == ErrorType.RATE_LIMIT:
        return {"max_attempts": 2, "delay_seconds": float(error.details.get("retry_after") or 60), "backoff": "fixed"}
    if error.error_type in (ErrorType.TIMEOUT, ErrorType.NETWORK_ERROR, ErrorType.CONNECTION_FAILED):
        return {"max_attempts": 3, "delay_seconds": 1.0, "backoff": "exponential"}
    if error.error_type == ErrorType.TEMPORARY_UNAVAILABLE:
        return {"max_attempts": 2, "delay_seconds": 5.0, "backoff": "fixed"}
    return {"max_attempts": 1, "delay_seconds": 1.0, "backoff": "fixed"}


_TITLES = {
    ErrorType.CONFIGURATION_ERROR: "Configuration Error",
    ErrorType.INVALID_API_KEY: "Invalid API Key",
    ErrorType.INVALID_MODEL: "Invalid Model",
    ErrorType.NETWORK_ERROR: "Network Error",
    ErrorType.CONNECTION_FAILED: "Connection Failed",
    ErrorType.TIMEOUT: "Request Timeout",
    ErrorType.RATE_LIMIT: "Rate Limited",
    ErrorType.QUOTA_EXCEEDED: "Quota Exceeded",
    ErrorType.UNAUTHORIZED: "Unauthorized",
    ErrorType.FORBIDDEN: "Access Denied",
    ErrorType.PARSING_ERROR: "Response Error",
    ErrorType.TEMPORARY_UNAVAILABLE: "Service Unavailable",
    ErrorType.UNKNOWN_ERROR: "Unexpected Error",
}


def describe_error(error: LLMError) -> dict[str, Any]:
    """User-facing summary of an error with suggested actions."""
    if error.error_type in (ErrorType.INVALID_API_KEY, ErrorType.UNAUTHORIZED):
        actions = [{"type": "config", "label": "Check API Key", "field": "api_key"}]
    elif error.error_type == ErrorType.RATE_LIMIT:
        wait = error.details.get("retry_after") or 60
        actions = [{"type": "retry", "label": f"Retry in {wait} seconds", "delay_seconds": wait}]
    elif error.error_type == ErrorType.TIMEOUT:
        actions = [{"type": "config", "label": "Increase Timeout", "field": "timeout"}]
    elif error.error_type == ErrorType.INVALID_MODEL:
        actions = [{"type": "config", "label": "Select Different Model", "field": "model"}]
    else:
        actions = [{"type": "retry", "label": "Try Again", "delay_seconds": 5}]

    return {
        "title": _TITLES.get(error.error_type, "Error"),
        "message": error.message,
        "type": error.error_type.value,
        "recoverable": error.recoverable,
        "timestamp": error.timestamp,
        "actions": actions,
        "fallback": "Continue with rule-based analysis only",
    }
