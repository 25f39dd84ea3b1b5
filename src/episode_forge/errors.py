"""Typed error taxonomy shared by every component.

Each error has a kind (what went wrong, broadly), a code (what went wrong,
precisely), a ``retryable`` flag used by the backoff helper, and an optional
hint that is safe to show to a model when the error is fed back as a tool
result.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    """Broad classes of failure."""
    VALIDATION = "VALIDATION_ERROR"
    PARSE = "PARSE_ERROR"
    UPSTREAM = "UPSTREAM_API_ERROR"
    CALLING_TOOL = "CALLING_TOOL_ERROR"
    DATABASE = "DATABASE_ERROR"
    UNEXPECTED = "UNEXPECTED_ERROR"


@dataclass(frozen=True)
class Guidance:
    description: str
    suggested_fix: str
    retryable: bool


GUIDANCE: dict[tuple[ErrorKind, str], Guidance] = {
    (ErrorKind.VALIDATION, "REQUIRED"): Guidance(
        "A required argument is missing.",
        "Provide every required field and try again.",
        False,
    ),
    (ErrorKind.VALIDATION, "INVALID_ARGUMENT"): Guidance(
        "An argument has an invalid value.",
        "Check types and allowed values, then try again.",
        False,
    ),
    (ErrorKind.VALIDATION, "NOT_SUPPORTED"): Guidance(
        "The requested operation or option is not supported.",
        "Use one of the supported options.",
        False,
    ),
    (ErrorKind.PARSE, "INVALID_JSON"): Guidance(
        "The model output could not be parsed as JSON.",
        "Return a single JSON object with no prose and no markdown fences.",
        True,
    ),
    (ErrorKind.PARSE, "INVALID_SHAPE"): Guidance(
        "The model output is JSON but does not match the required schema.",
        "Return exactly the fields the schema requires.",
        True,
    ),
    (ErrorKind.UPSTREAM, "RATE_LIMITED"): Guidance(
        "The provider rejected the call because of rate limits or quota.",
        "Wait and retry with backoff.",
        True,
    ),
    (ErrorKind.UPSTREAM, "UNAVAILABLE"): Guidance(
        "The provider is overloaded or temporarily unavailable.",
        "Wait and retry with backoff.",
        True,
    ),
    (ErrorKind.UPSTREAM, "TIMEOUT"): Guidance(
        "The provider did not answer within the configured timeout.",
        "Retry; raise the HTTP timeout if it keeps happening.",
        True,
    ),
    (ErrorKind.UPSTREAM, "EMPTY_RESPONSE"): Guidance(
        "The provider answered with empty text.",
        "Retry the same request.",
        True,
    ),
    (ErrorKind.UPSTREAM, "BAD_REQUEST"): Guidance(
        "The provider rejected the request as invalid.",
        "Fix the request payload, API key or model name; retrying will not help.",
        False,
    ),
    (ErrorKind.UPSTREAM, "EMBED_FAILED"): Guidance(
        "The embedding call failed.",
        "Retry later or check the embedding model configuration.",
        True,
    ),
    (ErrorKind.CALLING_TOOL, "UNKNOWN_TOOL"): Guidance(
        "The requested tool does not exist.",
        "Call one of the listed tools.",
        False,
    ),
    (ErrorKind.CALLING_TOOL, "TOOL_EXECUTION_FAILED"): Guidance(
        "The tool raised an error while running.",
        "Check the arguments or continue without this tool.",
        False,
    ),
    (ErrorKind.CALLING_TOOL, "INVALID_ARGUMENT"): Guidance(
        "The tool arguments are invalid.",
        "Fix the arguments to match the tool description.",
        False,
    ),
    (ErrorKind.DATABASE, "QUERY_FAILED"): Guidance(
        "A database read failed.",
        "Retry; check the database connection if it persists.",
        False,
    ),
    (ErrorKind.DATABASE, "INSERT_FAILED"): Guidance(
        "A database insert failed.",
        "Check constraints and retry.",
        False,
    ),
    (ErrorKind.DATABASE, "UPDATE_FAILED"): Guidance(
        "A database update failed.",
        "Check the target record exists and retry.",
        False,
    ),
    (ErrorKind.DATABASE, "DELETE_FAILED"): Guidance(
        "A database delete failed.",
        "Retry; check the database connection if it persists.",
        False,
    ),
    (ErrorKind.UNEXPECTED, "UNKNOWN"): Guidance(
        "An unexpected error occurred.",
        "Inspect the logs for the underlying exception.",
        False,
    ),
}

MAX_DETAIL_STRING = 600
MAX_DETAIL_ITEMS = 20
SECRET_KEY_RE = re.compile(r"key|secret|token|authorization|password", re.IGNORECASE)


def sanitize_details(value: Any, depth: int = 0) -> Any:
    """Make ``details`` safe to log or hand to a model.

    Secret-looking keys are redacted, long strings truncated and long lists
    clipped.
    """
    if depth > 4:
        return "[TRUNCATED]"
    if isinstance(value, str):
        if len(value) > MAX_DETAIL_STRING:
            return value[:MAX_DETAIL_STRING] + "..."
        return value
    if isinstance(value, Mapping):
        clean = {}
        for key, item in value.items():
            if SECRET_KEY_RE.search(str(key)):
                clean[str(key)] = "[REDACTED]"
            else:
                clean[str(key)] = sanitize_details(item, depth + 1)
        return clean
    if isinstance(value, (list, tuple, set)):
        return [sanitize_details(item, depth + 1) for item in list(value)[:MAX_DETAIL_ITEMS]]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return sanitize_details(str(value), depth + 1)


class AgentError(Exception):
    """Base class for all classified errors."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN",
        *,
        retryable: Optional[bool] = None,
        hint: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.hint = hint
        self.details = details or {}
        guidance = GUIDANCE.get((self.kind, code))
        if retryable is None:
            retryable = guidance.retryable if guidance else False
        self.retryable = retryable

    @property
    def code_key(self) -> str:
        return f"{self.kind.value}.{self.code}"

    @property
    def guidance(self) -> Optional[Guidance]:
        return GUIDANCE.get((self.kind, self.code))

    def to_llm_response(self) -> dict:
        """Render as a JSON-safe payload suitable for a tool result."""
        guidance = self.guidance
        return {
            "error": self.message[:MAX_DETAIL_STRING],
            "type": self.kind.value,
            "code": self.code_key,
            "code_key": self.code,
            "retryable": self.retryable,
            "description": guidance.description if guidance else None,
            "suggested_fix": guidance.suggested_fix if guidance else None,
            "hint": self.hint,
            "details": sanitize_details(self.details),
        }

    @classmethod
    def from_unknown(cls, exc: BaseException) -> "AgentError":
        """Wrap any exception, leaving classified errors untouched."""
        if isinstance(exc, AgentError):
            return exc
        return UnexpectedError(
            str(exc) or type(exc).__name__,
            details={"exception_type": type(exc).__name__},
        )

    def __str__(self) -> str:
        return f"[{self.code_key}] {self.message}"


class ValidationError(AgentError):
    kind = ErrorKind.VALIDATION


class ParseError(AgentError):
    kind = ErrorKind.PARSE


class UpstreamError(AgentError):
    """Provider failure; may carry the HTTP status and a server retry-after."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        code: str = "UNAVAILABLE",
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, code, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after


class ToolError(AgentError):
    kind = ErrorKind.CALLING_TOOL


class DatabaseError(AgentError):
    kind = ErrorKind.DATABASE


class UnexpectedError(AgentError):
    kind = ErrorKind.UNEXPECTED


RETRY_IN_RE = re.compile(r"retry in\s+([0-9]+(?:\.[0-9]+)?)\s*s", re.IGNORECASE)
RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"([0-9]+(?:\.[0-9]+)?)s"')
UNAVAILABLE_MARKERS = ("overloaded", "unavailable", "resource_exhausted", "quota")


def parse_retry_after(text: str, headers: Optional[Mapping[str, str]] = None) -> Optional[float]:
    """Find a server-declared retry interval in headers or message text."""
    if headers:
        raw = headers.get("retry-after") or headers.get("Retry-After")
        if raw:
            try:
                return max(0.0, float(raw))
            except ValueError:
                pass
    if not text:
        return None
    for pattern in (RETRY_DELAY_RE, RETRY_IN_RE):
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None


def classify_http_status(
    status_code: int,
    body: str = "",
    headers: Optional[Mapping[str, str]] = None,
    provider: str = "",
) -> UpstreamError:
    """Turn a non-2xx provider response into an UpstreamError.

    429 and 5xx are retryable. Other 4xx responses are not, unless the body
    says the provider is overloaded or out of quota.
    """
    snippet = (body or "")[:MAX_DETAIL_STRING]
    retry_after = parse_retry_after(body, headers)
    details = {"status": status_code, "provider": provider, "body": snippet}
    lowered = snippet.lower()

    if status_code == 429:
        code = "RATE_LIMITED"
    elif status_code >= 500:
        code = "UNAVAILABLE"
    elif any(marker in lowered for marker in UNAVAILABLE_MARKERS):
        code = "RATE_LIMITED"
    else:
        code = "BAD_REQUEST"

    return UpstreamError(
        f"{provider or 'provider'} returned HTTP {status_code}",
        code,
        status_code=status_code,
        retry_after=retry_after,
        details=details,
    )
