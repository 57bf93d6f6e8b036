"""Tests for LLM error classification and recovery policy."""

from __future__ import annotations

import pytest

from retroq.llm.errors import (
    ErrorCode,
    ErrorType,
    LLMError,
    LLMParseError,
    LLMTimeoutError,
    ProviderInitializationError,
    classify_error,
    describe_error,
    extract_retry_after,
    get_retry_strategy,
    is_non_retryable,
    should_fallback,
)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("API key is missing", ErrorType.INVALID_API_KEY),
        ("Invalid API key provided", ErrorType.UNAUTHORIZED),
        ("429 Too Many Requests", ErrorType.RATE_LIMIT),
        ("Quota exceeded for project", ErrorType.QUOTA_EXCEEDED),
        ("Request timed out after 30s", ErrorType.TIMEOUT),
        ("ECONNREFUSED 127.0.0.1:443", ErrorType.CONNECTION_FAILED),
        ("model gemini-9 not found", ErrorType.INVALID_MODEL),
        ("Failed to parse JSON output", ErrorType.PARSING_ERROR),
        ("403 Forbidden", ErrorType.FORBIDDEN),
        ("503 Service Unavailable", ErrorType.TEMPORARY_UNAVAILABLE),
        ("something odd happened", ErrorType.UNKNOWN_ERROR),
    ],
)
def test_classify_by_message(message, expected):
    assert classify_error(RuntimeError(message)).error_type == expected


def test_classified_error_keeps_original_details():
    error = classify_error(ValueError("boom"), context="generate_insights")

    assert isinstance(error, LLMError)
    assert error.code == ErrorCode.UNKNOWN_FAILURE
    assert error.details["original_message"] == "boom"
    assert error.details["exception_type"] == "ValueError"
    assert error.details["context"] == "generate_insights"


def test_empty_message_uses_exception_name():
    assert classify_error(TimeoutError()).error_type == ErrorType.TIMEOUT


def test_llm_errors_pass_through():
    original = LLMParseError("bad output")
    assert classify_error(original) is original


def test_rate_limit_retry_after():
    error = classify_error(RuntimeError("Rate limit hit, retry after 30 seconds"))

    assert error.details["retry_after"] == 30
    assert error.recoverable is True
    assert get_retry_strategy(error) == {"max_attempts": 2, "delay_seconds": 30.0, "backoff": "fixed"}
    assert describe_error(error)["actions"][0]["label"] == "Retry in 30 seconds"


def test_extract_retry_after_defaults():
    assert extract_retry_after("rate limit hit") == 60
    assert extract_retry_after("nothing useful") is None


def test_timeout_error_defaults():
    error = LLMTimeoutError(details={"timeout_seconds": 5})
    assert error.error_type == ErrorType.TIMEOUT
    assert error.code == ErrorCode.NETWORK_TIMEOUT
    assert error.recoverable
    assert get_retry_strategy(error)["backoff"] == "exponential"


def test_fallback_and_retry_policy():
    quota = classify_error(RuntimeError("quota exceeded"))
    assert should_fallback(quota)
    assert get_retry_strategy(quota) is None

    missing_key = classify_error(RuntimeError("API key is required"))
    assert not should_fallback(missing_key)
    assert is_non_retryable(missing_key)

    assert should_fallback(LLMParseError("bad"))


def test_provider_initialization_is_a_configuration_error():
    error = classify_error(ProviderInitializationError("GOOGLE_CLOUD_PROJECT not set"), context="generate_insights")

    assert error.error_type == ErrorType.CONFIGURATION_ERROR
    assert error.details["exception_type"] == "ProviderInitializationError"
    assert is_non_retryable(error)
    assert should_fallback(error)


def test_non_retryable_markers_on_raw_errors():
    assert is_non_retryable(ValueError("Configuration missing project id"))
    assert is_non_retryable(RuntimeError("resource not found"))
    assert not is_non_retryable(RuntimeError("connection reset"))


def test_to_dict_hides_traceback():
    error = LLMError("x", details={"traceback": "...", "context": "parse"})
    data = error.to_dict()
    assert data["details"] == {"context": "parse"}
    assert data["type"] == "UNKNOWN_ERROR"
    assert data["recoverable"] is False


def test_describe_error_offers_fallback():
    summary = describe_error(classify_error(RuntimeError("unauthorized")))
    assert summary["title"] == "Unauthorized"
    assert summary["actions"][0]["field"] == "api_key"
    assert summary["fallback"] == "Continue with rule-based analysis only"
