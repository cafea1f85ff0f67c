"""
Centralized error handlers for FastAPI.

Every failure leaves the API as the same envelope:
``{"success": false, "error": <message>}``. Outside production a
``stack`` field with the formatted traceback is appended.
No stack traces are exposed in production.
"""

import logging
import traceback
from collections.abc import Mapping
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apishield.domain.entities import NormalizedError, RequestContext
from apishield.interfaces.schemas import ErrorResponse
from apishield.shared.errors.classifier import ErrorClassifier

logger = logging.getLogger(__name__)


def error_body(normalized: NormalizedError, exc: BaseException, include_stack: bool) -> dict:
    """Build the JSON error envelope."""
    stack = None
    if include_stack:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return ErrorResponse(error=normalized.message, stack=stack).model_dump(exclude_none=True)


def request_context(request: Request) -> RequestContext:
    """Collect the request facts a diagnostic record needs."""
    sanitized = getattr(request.state, "sanitized", None)
    return RequestContext(
        path=request.url.path,
        method=request.method,
        client_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        body=sanitized.body if sanitized is not None else None,
        params=dict(request.path_params),
        query=sanitized.query if sanitized is not None else dict(request.query_params),
        subject_id=getattr(request.state, "user_id", None),
    )


def failure_response(
    exc: BaseException,
    context: RequestContext,
    classifier: ErrorClassifier,
    include_stack: bool,
) -> JSONResponse:
    """Classify a failure and render its JSON response."""
    normalized, _record = classifier.classify(exc, context)
    if normalized.status_code >= 500:
        logger.error("%s on %s %s", normalized.error_class.tag, context.method, context.path)
    else:
        logger.warning("%s on %s %s", normalized.error_class.tag, context.method, context.path)
    return JSONResponse(
        status_code=normalized.status_code,
        content=error_body(normalized, exc, include_stack),
        headers=_failure_headers(exc),
    )


def _failure_headers(exc: BaseException) -> Optional[Mapping[str, str]]:
    headers = getattr(exc, "headers", None)
    return headers if isinstance(headers, Mapping) else None


def register_error_handlers(app: FastAPI) -> None:
    """Register the framework-level error handlers on the FastAPI application.

    Failures raised by handlers and collaborators propagate to the request
    pipeline; only errors FastAPI converts itself are handled here. Both
    paths share the classifier stored on ``app.state``.

    Args:
        app: The FastAPI application instance.
    """

    async def _handle(request: Request, exc: Exception) -> JSONResponse:
        return failure_response(
            exc,
            request_context(request),
            request.app.state.error_classifier,
            not request.app.state.settings.is_production,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle HTTP errors raised by routing and handlers."""
        return await _handle(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request body/query validation failures."""
        return await _handle(request, exc)
