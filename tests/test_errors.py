"""Tests for the error taxonomy."""

from episode_forge.errors import (
    AgentError,
    DatabaseError,
    ToolError,
    UnexpectedError,
    UpstreamError,
    classify_http_status,
    parse_retry_after,
    sanitize_details,
)


class TestSanitizeDetails:
    """Test redaction and truncation of error details."""

    def test_redacts_secret_keys(self):
        clean = sanitize_details({"api_key": "abc", "Authorization": "Bearer x", "model": "m"})
        assert clean == {"api_key": "[REDACTED]", "Authorization": "[REDACTED]", "model": "m"}

    def test_truncates_long_strings_and_lists(self):
        clean = sanitize_details({"body": "x" * 2000, "items": list(range(100))})
        assert len(clean["body"]) == 603
        assert clean["items"] == list(range(20))

    def test_nested_and_unknown_values(self):
        clean = sanitize_details({"outer": {"token": "t", "obj": object()}})
        assert clean["outer"]["token"] == "[REDACTED]"
        assert isinstance(clean["outer"]["obj"], str)


class TestAgentError:
    """Test codes, retryability and the model-facing payload."""

    def test_retryable_defaults_from_guidance(self):
        assert UpstreamError("x", "RATE_LIMITED").retryable
        assert not UpstreamError("x", "BAD_REQUEST").retryable
        assert not ToolError("x", "UNKNOWN_TOOL").retryable
        assert DatabaseError("x", "QUERY_FAILED", retryable=True).retryable

    def test_code_key_and_str(self):
        error = ToolError("no such tool", "UNKNOWN_TOOL")
        assert error.code_key == "CALLING_TOOL_ERROR.UNKNOWN_TOOL"
        assert str(error) == "[CALLING_TOOL_ERROR.UNKNOWN_TOOL] no such tool"

    def test_llm_response_payload(self):
        error = ToolError(
            "bad episode",
            "INVALID_ARGUMENT",
            hint="use 1..3",
            details={"episode_no": 9, "password": "p"},
        )
        payload = error.to_llm_response()
        assert payload["type"] == "CALLING_TOOL_ERROR"
        assert payload["retryable"] is False
        assert payload["hint"] == "use 1..3"
        assert payload["suggested_fix"]
        assert payload["details"] == {"episode_no": 9, "password": "[REDACTED]"}

    def test_from_unknown_wraps_plain_exceptions(self):
        wrapped = AgentError.from_unknown(KeyError("missing"))
        assert isinstance(wrapped, UnexpectedError)
        assert wrapped.details["exception_type"] == "KeyError"

        original = DatabaseError("x", "INSERT_FAILED")
        assert AgentError.from_unknown(original) is original


class TestHttpClassification:
    """Test mapping of provider responses to upstream errors."""

    def test_429_is_rate_limited(self):
        error = classify_http_status(429, "Too many requests", {"retry-after": "3"}, "gemini")
        assert error.code == "RATE_LIMITED"
        assert error.retryable
        assert error.retry_after == 3.0
        assert error.status_code == 429

    def test_5xx_is_unavailable(self):
        assert classify_http_status(503, "").code == "UNAVAILABLE"
        assert classify_http_status(500, "").retryable

    def test_plain_400_is_not_retryable(self):
        error = classify_http_status(400, '{"error": "invalid model"}')
        assert error.code == "BAD_REQUEST"
        assert not error.retryable

    def test_overloaded_body_is_retryable(self):
        error = classify_http_status(400, '{"status": "RESOURCE_EXHAUSTED"}')
        assert error.code == "RATE_LIMITED"
        assert error.retryable

    def test_retry_after_from_body(self):
        assert parse_retry_after('{"retryDelay": "17s"}') == 17.0
        assert parse_retry_after("Please retry in 2.5s.") == 2.5
        assert parse_retry_after("no hint") is None
