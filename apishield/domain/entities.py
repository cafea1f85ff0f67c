"""
Domain entities for request defense and error normalization.

Value objects passed between the sanitizer, the error classifier
and the pipeline. No framework imports and no IO operations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

ANONYMOUS_SUBJECT = "anonymous"
GENERIC_ERROR_MESSAGE = "Server Error"


class ErrorClass(Enum):
    """Normalized failure category with its fixed status and default message."""

    NOT_FOUND = ("not_found", 404, "Resource not found")
    DUPLICATE = ("duplicate", 400, "Duplicate field value entered")
    VALIDATION_FAILED = ("validation_failed", 400, "Validation failed")
    AUTH_INVALID = ("auth_invalid", 401, "Invalid token")
    AUTH_EXPIRED = ("auth_expired", 401, "Token expired")
    PAYMENT_DECLINED = ("payment_declined", 400, "Your card was declined")
    PAYMENT_UNAVAILABLE = ("payment_unavailable", 503, "Payment service temporarily unavailable")
    PAYMENT_GENERIC = ("payment_generic", 500, "Payment processing error")
    UNCLASSIFIED = ("unclassified", 500, GENERIC_ERROR_MESSAGE)

    def __init__(self, tag: str, status_code: int, default_message: str) -> None:
        self.tag = tag
        self.status_code = status_code
        self.default_message = default_message


@dataclass(frozen=True)
class NormalizedError:
    """The client-facing outcome of classifying a failure."""

    error_class: ErrorClass
    status_code: int
    message: str


@dataclass(frozen=True)
class RequestContext:
    """Request facts a diagnostic record is built from.

    Body, params and query are the values as the handler saw them;
    they are redacted before leaving the classifier.
    """

    path: str = ""
    method: str = ""
    client_addr: Optional[str] = None
    user_agent: Optional[str] = None
    body: Any = None
    params: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    subject_id: Optional[str] = None


@dataclass(frozen=True)
class DiagnosticRecord:
    """Redacted operator-facing description of one failed request. Never persisted."""

    message: str
    path: str
    method: str
    client_addr: Optional[str]
    user_agent: Optional[str]
    redacted_body: Any
    redacted_params: dict[str, Any]
    redacted_query: dict[str, Any]
    subject_id: str = ANONYMOUS_SUBJECT


@dataclass(frozen=True)
class SanitizedRequest:
    """Inbound fields after injection stripping and parameter deduplication."""

    body: Any
    query: dict[str, Any]
    params: dict[str, Any]
