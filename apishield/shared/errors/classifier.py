"""
Failure classification.

Maps any raised failure to exactly one ErrorClass with a client-safe
message, and emits a redacted diagnostic record for operators.

Collaborators raise loosely shaped errors (document-store errors,
SQL driver errors, JWT library errors, payment SDK errors). They are
recognized here by type, error code, SQLSTATE or class name, checked
in a fixed priority order. The first match wins.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError

from apishield.domain.entities import (
    ANONYMOUS_SUBJECT,
    GENERIC_ERROR_MESSAGE,
    DiagnosticRecord,
    ErrorClass,
    NormalizedError,
    RequestContext,
)
from apishield.domain.errors import (
    DuplicateKeyError,
    ExpiredTokenError,
    FieldValidationError,
    IdentifierCastError,
    MalformedTokenError,
    PaymentDeclinedError,
    PaymentGatewayError,
    PaymentUnavailableError,
)
from apishield.shared.security.sanitizer import redact

logger = logging.getLogger(__name__)

DiagnosticEmitter = Callable[[DiagnosticRecord], None]

MONGO_DUPLICATE_KEY_CODE = 11000
SQLSTATE_INVALID_TEXT = "22P02"
SQLSTATE_UNIQUE_VIOLATION = "23505"

CAST_ERROR_NAMES = frozenset({"CastError", "InvalidId"})
MALFORMED_TOKEN_NAMES = frozenset(
    {"JsonWebTokenError", "InvalidTokenError", "DecodeError", "InvalidSignatureError", "JWTError"}
)
EXPIRED_TOKEN_NAMES = frozenset({"TokenExpiredError", "ExpiredSignatureError"})
CARD_ERROR_TYPES = frozenset({"StripeCardError", "CardError"})
GATEWAY_CONNECTION_TYPES = frozenset({"StripeConnectionError", "APIConnectionError"})


def _type_names(exc: BaseException) -> set[str]:
    return {cls.__name__ for cls in type(exc).__mro__}


def _sqlstate(exc: BaseException) -> Optional[str]:
    if not isinstance(exc, DBAPIError):
        return None
    # psycopg 3 exposes sqlstate, psycopg2 exposes pgcode
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _gateway_type(exc: BaseException) -> Optional[str]:
    error_type = getattr(exc, "type", None)
    return error_type if isinstance(error_type, str) else None


def _is_identifier_cast(exc: BaseException) -> bool:
    return (
        isinstance(exc, IdentifierCastError)
        or bool(_type_names(exc) & CAST_ERROR_NAMES)
        or _sqlstate(exc) == SQLSTATE_INVALID_TEXT
    )


def _is_duplicate(exc: BaseException) -> bool:
    return (
        isinstance(exc, DuplicateKeyError)
        or getattr(exc, "code", None) == MONGO_DUPLICATE_KEY_CODE
        or _sqlstate(exc) == SQLSTATE_UNIQUE_VIOLATION
    )


def _validation_messages(exc: BaseException) -> Optional[list[str]]:
    """Return field messages when ``exc`` is a field-validation failure."""
    if isinstance(exc, FieldValidationError):
        return exc.field_messages()
    if isinstance(exc, PydanticValidationError) or type(exc).__name__ == "RequestValidationError":
        return [str(error.get("msg", "")) for error in exc.errors()]
    if type(exc).__name__ == "ValidationError":
        errors = getattr(exc, "errors", None)
        if isinstance(errors, Mapping):
            return [str(getattr(item, "message", item)) for item in errors.values()]
    return None


def _is_malformed_token(exc: BaseException) -> bool:
    # Leaf name only: JWT libraries derive their expiry error from the invalid-token base.
    return isinstance(exc, MalformedTokenError) or type(exc).__name__ in MALFORMED_TOKEN_NAMES


def _is_expired_token(exc: BaseException) -> bool:
    return isinstance(exc, ExpiredTokenError) or type(exc).__name__ in EXPIRED_TOKEN_NAMES


def _is_card_decline(exc: BaseException) -> bool:
    return (
        isinstance(exc, PaymentDeclinedError)
        or _gateway_type(exc) == "StripeCardError"
        or type(exc).__name__ in CARD_ERROR_TYPES
    )


def _is_gateway_unavailable(exc: BaseException) -> bool:
    return (
        isinstance(exc, PaymentUnavailableError)
        or _gateway_type(exc) == "StripeConnectionError"
        or type(exc).__name__ in GATEWAY_CONNECTION_TYPES
    )


def _is_gateway_failure(exc: BaseException) -> bool:
    error_type = _gateway_type(exc) or ""
    return (
        isinstance(exc, PaymentGatewayError)
        or error_type.startswith("Stripe")
        or "StripeError" in _type_names(exc)
    )


def failure_message(exc: BaseException) -> str:
    """Best human-readable message a failure carries."""
    for attr in ("user_message", "message", "detail"):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(exc)


def failure_status(exc: BaseException) -> Optional[int]:
    """HTTP status a failure carries itself, if any."""
    for attr in ("status_code", "statusCode", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return None


class ErrorClassifier:
    """Turns raw failures into normalized errors and diagnostic records.

    Args:
        emit: Collaborator receiving one DiagnosticRecord per failure.
    """

    def __init__(self, emit: Optional[DiagnosticEmitter] = None) -> None:
        self._emit = emit

    def classify(
        self, raw_failure: BaseException, context: Optional[RequestContext] = None
    ) -> tuple[NormalizedError, DiagnosticRecord]:
        """Classify a failure. Never raises."""
        try:
            normalized = self.normalize(raw_failure)
        except Exception:
            logger.exception("Failure classification failed: %s", type(raw_failure).__name__)
            normalized = NormalizedError(
                ErrorClass.UNCLASSIFIED,
                ErrorClass.UNCLASSIFIED.status_code,
                GENERIC_ERROR_MESSAGE,
            )
        try:
            record = self._diagnostic(raw_failure, context or RequestContext())
        except Exception:
            logger.exception("Diagnostic record could not be built")
            record = DiagnosticRecord(
                message=type(raw_failure).__name__,
                path="",
                method="",
                client_addr=None,
                user_agent=None,
                redacted_body=None,
                redacted_params={},
                redacted_query={},
            )
        self._publish(record)
        return normalized, record

    def normalize(self, exc: BaseException) -> NormalizedError:
        """Map a failure to its ErrorClass, first match wins."""
        if _is_identifier_cast(exc):
            return self._fixed(ErrorClass.NOT_FOUND)
        if _is_duplicate(exc):
            return self._fixed(ErrorClass.DUPLICATE)
        messages = _validation_messages(exc)
        if messages is not None:
            error_class = ErrorClass.VALIDATION_FAILED
            message = ", ".join(m for m in messages if m) or error_class.default_message
            return NormalizedError(error_class, error_class.status_code, message)
        if _is_malformed_token(exc):
            return self._fixed(ErrorClass.AUTH_INVALID)
        if _is_expired_token(exc):
            return self._fixed(ErrorClass.AUTH_EXPIRED)
        if _is_card_decline(exc):
            error_class = ErrorClass.PAYMENT_DECLINED
            message = failure_message(exc) or error_class.default_message
            return NormalizedError(error_class, error_class.status_code, message)
        if _is_gateway_unavailable(exc):
            return self._fixed(ErrorClass.PAYMENT_UNAVAILABLE)
        if _is_gateway_failure(exc):
            return self._fixed(ErrorClass.PAYMENT_GENERIC)
        return self._unclassified(exc)

    @staticmethod
    def _fixed(error_class: ErrorClass) -> NormalizedError:
        return NormalizedError(error_class, error_class.status_code, error_class.default_message)

    @staticmethod
    def _unclassified(exc: BaseException) -> NormalizedError:
        error_class = ErrorClass.UNCLASSIFIED
        status = failure_status(exc) or error_class.status_code
        message = failure_message(exc) or error_class.default_message
        return NormalizedError(error_class, status, message)

    @staticmethod
    def _diagnostic(exc: BaseException, context: RequestContext) -> DiagnosticRecord:
        return DiagnosticRecord(
            message=failure_message(exc),
            path=context.path,
            method=context.method,
            client_addr=context.client_addr,
            user_agent=context.user_agent,
            redacted_body=redact(context.body),
            redacted_params=redact(context.params),
            redacted_query=redact(context.query),
            subject_id=context.subject_id or ANONYMOUS_SUBJECT,
        )

    def _publish(self, record: DiagnosticRecord) -> None:
        if self._emit is None:
            return
        try:
            self._emit(record)
        except Exception:
            logger.warning("Diagnostic emission failed", exc_info=True)
