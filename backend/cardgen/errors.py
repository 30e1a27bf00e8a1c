"""
Error taxonomy for the upstream gateway and the generation layer.

Each layer raises a single exception type tagged with a closed enum, so
callers branch with ``match err.kind`` instead of walking a class hierarchy.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Dict, Optional, Sequence, Tuple


class ErrorKind(StrEnum):
    UNAUTHORIZED = "unauthorized"
    BAD_REQUEST = "bad-request"
    PAYMENT_REQUIRED = "payment-required"
    NOT_FOUND = "not-found"
    RATE_LIMITED = "rate-limited"
    SERVER_ERROR = "server-error"
    NETWORK_ERROR = "network-error"
    INVALID_JSON = "invalid-json"
    SCHEMA_VALIDATION = "schema-validation"


DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.UNAUTHORIZED: "Invalid or missing upstream API key",
    ErrorKind.BAD_REQUEST: "Invalid request",
    ErrorKind.PAYMENT_REQUIRED: "Insufficient credits or quota exceeded",
    ErrorKind.NOT_FOUND: "Model not found or unsupported",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded",
    ErrorKind.SERVER_ERROR: "Upstream server error",
    ErrorKind.NETWORK_ERROR: "Network error or request timeout",
    ErrorKind.INVALID_JSON: "Model returned invalid JSON",
    ErrorKind.SCHEMA_VALIDATION: "Response does not match schema",
}

# Upper bound on how much of an upstream error body is kept for diagnostics
MAX_ERROR_BODY = 2000


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class GatewayError(Exception):
    """A failure talking to the upstream completion API."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        http_status: Optional[int] = None,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        violations: Sequence[SchemaViolation] = (),
    ):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        self.http_status = http_status
        self.retry_after = retry_after
        self.details = details
        self.violations: Tuple[SchemaViolation, ...] = tuple(violations)
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r}, http_status={self.http_status!r})"


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Seconds from a delay-seconds Retry-After header; HTTP-dates and non-integers are ignored."""
    if value is None:
        return None
    value = value.strip()
    # ASCII digits only: rejects signs, exponents, "inf" and "nan"
    if not value.isascii() or not value.isdigit():
        return None
    return int(value)


def error_from_status(
    status: int, body: Optional[str] = None, retry_after: Optional[str] = None
) -> GatewayError:
    """Classify a non-success upstream HTTP status."""
    text = body[:MAX_ERROR_BODY] if body else None
    details = {"body": text} if text else None
    if status == 400:
        return GatewayError(ErrorKind.BAD_REQUEST, text, http_status=400, details=details)
    if status == 401:
        return GatewayError(ErrorKind.UNAUTHORIZED, http_status=401, details=details)
    if status == 402:
        return GatewayError(ErrorKind.PAYMENT_REQUIRED, http_status=402, details=details)
    if status == 404:
        return GatewayError(ErrorKind.NOT_FOUND, http_status=404, details=details)
    if status == 429:
        return GatewayError(
            ErrorKind.RATE_LIMITED,
            http_status=429,
            retry_after=parse_retry_after(retry_after),
            details=details,
        )
    if status >= 500:
        return GatewayError(
            ErrorKind.SERVER_ERROR, text or f"HTTP {status} error", http_status=status, details=details
        )
    # Remaining 4xx statuses are request problems the caller has to fix
    return GatewayError(
        ErrorKind.BAD_REQUEST, f"Unexpected HTTP status: {status}", http_status=status, details=details
    )


class GenerationErrorKind(StrEnum):
    QUOTA_EXCEEDED = "quota-exceeded"
    UPSTREAM_UNAVAILABLE = "upstream-unavailable"
    INVALID_OUTPUT = "invalid-output"


class GenerationError(Exception):
    """Terminal outcome of a failed flashcard generation."""

    def __init__(self, kind: GenerationErrorKind, message: str, *, attempts: int = 0):
        self.kind = kind
        self.message = message
        self.attempts = attempts
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value
