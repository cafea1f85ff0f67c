"""
Typed failures raised by the collaborators the pipeline wraps.

Route handlers, the data layer, token verification and the payment
gateway raise these (or third-party errors of the same shape).
They are mapped to HTTP responses by the error classifier.
No framework imports allowed.
"""

from typing import Optional


class ApiShieldError(Exception):
    """Base error for all failures raised towards the pipeline."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class HttpError(ApiShieldError):
    """A failure that already knows which status the client should see."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayloadTooLargeError(HttpError):
    """Raised when a request body exceeds the configured size limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(413, "Request entity too large")
        self.limit = limit


# --- Data layer ---


class IdentifierCastError(ApiShieldError):
    """Raised when a resource identifier cannot be cast to the store's id type."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Cast to identifier failed for value: {value}")
        self.value = value


class DuplicateKeyError(ApiShieldError):
    """Raised when a write violates a uniqueness constraint."""

    code = 11000

    def __init__(self, field: str) -> None:
        super().__init__(f"Duplicate value for field: {field}")
        self.field = field


class FieldValidationError(ApiShieldError):
    """Raised when one or more document fields fail validation.

    Args:
        errors: Mapping of field name to the human-readable failure message.
    """

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("Validation failed: " + ", ".join(errors))
        self.errors = errors

    def field_messages(self) -> list[str]:
        """Return the per-field messages in declaration order."""
        return list(self.errors.values())


# --- Authentication tokens ---


class AuthTokenError(ApiShieldError):
    """Base error for bearer token verification failures."""


class MalformedTokenError(AuthTokenError):
    """Raised when a token cannot be decoded or its signature is wrong."""


class ExpiredTokenError(AuthTokenError):
    """Raised when a well-formed token is past its expiry."""


# --- Payment gateway ---


class PaymentGatewayError(ApiShieldError):
    """Base error for payment gateway failures."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class PaymentDeclinedError(PaymentGatewayError):
    """Raised when the gateway declines a card. The message is client-safe."""


class PaymentUnavailableError(PaymentGatewayError):
    """Raised when the gateway cannot be reached."""
