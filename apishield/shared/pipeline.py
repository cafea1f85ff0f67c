"""
Request defense pipeline.

A single ASGI middleware that runs, for every HTTP request:

1. CORS preflight answer
2. tiered rate limiting
3. query and body sanitization
4. the downstream application
5. failure classification for anything that escapes it

Security headers are attached to every response it lets out,
including 429, error and preflight responses.
"""

import json
import logging
import time
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlencode

from fastapi import FastAPI
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from apishield.core.config import Settings
from apishield.domain.entities import SanitizedRequest
from apishield.domain.errors import PayloadTooLargeError
from apishield.shared.errors.classifier import ErrorClassifier
from apishield.shared.errors.handlers import (
    failure_response,
    register_error_handlers,
    request_context,
)
from apishield.shared.logging import DiagnosticSink
from apishield.shared.security.headers import HeaderPolicy
from apishield.shared.security.rate_limiting import (
    Deny,
    RateLimiter,
    build_tiers,
    client_key,
    rate_limit_exceeded_response,
    rate_limit_headers,
)
from apishield.shared.security.sanitizer import Sanitizer

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
PREFLIGHT_STATUS = 200


class RequestPipeline:
    """Pure ASGI middleware composing the request defenses.

    Args:
        app: The downstream ASGI application.
        rate_limiter: Limiter charged once per request.
        header_policy: Security and CORS header policy.
        sanitizer: Inbound field sanitizer.
        classifier: Failure classifier for escaped exceptions.
        include_stack: Append the traceback to error responses.
        trust_forwarded_for: Key clients on X-Forwarded-For.
        clock: Epoch-seconds time source.
        max_body_size: Largest JSON or form body read for sanitization.
    """

    def __init__(
        self,
        app: ASGIApp,
        rate_limiter: RateLimiter,
        header_policy: HeaderPolicy,
        sanitizer: Sanitizer,
        classifier: ErrorClassifier,
        include_stack: bool = False,
        trust_forwarded_for: bool = False,
        clock: Callable[[], float] = time.time,
        max_body_size: int = 1_048_576,
    ) -> None:
        self.app = app
        self.rate_limiter = rate_limiter
        self.header_policy = header_policy
        self.sanitizer = sanitizer
        self.classifier = classifier
        self.include_stack = include_stack
        self.trust_forwarded_for = trust_forwarded_for
        self.clock = clock
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope = dict(scope)
        request = Request(scope)
        origin = request.headers.get("origin")
        extra_headers: dict[str, str] = {}
        response_started = False

        async def send_with_headers(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                headers = MutableHeaders(scope=message)
                self.header_policy.apply(headers, origin)
                for name, value in extra_headers.items():
                    headers[name] = value
            await send(message)

        if _is_preflight(request):
            response = Response(
                status_code=PREFLIGHT_STATUS,
                headers=self.header_policy.preflight_headers(origin),
            )
            await response(scope, receive, send_with_headers)
            return

        tier = self.rate_limiter.tier_for(request.url.path)
        if tier is not None:
            key = client_key(request, self.trust_forwarded_for)
            decision = self.rate_limiter.admit(key, tier.tier_id, self.clock())
            extra_headers.update(rate_limit_headers(decision))
            if isinstance(decision, Deny):
                logger.warning("Rate limit exceeded: tier=%s client=%s", tier.tier_id, key)
                response = rate_limit_exceeded_response(tier, decision)
                await response(scope, receive, send_with_headers)
                return

        try:
            receive = await self._sanitize(scope, request, receive)
            await self.app(scope, receive, send_with_headers)
        except Exception as exc:
            if response_started:
                raise
            response = failure_response(
                exc,
                request_context(Request(scope, receive)),
                self.classifier,
                self.include_stack,
            )
            await response(scope, receive, send_with_headers)

    async def _sanitize(self, scope: Scope, request: Request, receive: Receive) -> Receive:
        """Clean query and body in place and return a receive that replays the body."""
        query_pairs = parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True)
        content_type = request.headers.get("content-type", "")
        body_kind = _body_kind(content_type)

        if body_kind is None:
            sanitized = self.sanitizer.clean(None, query_pairs, {})
            _store(scope, sanitized, query_pairs)
            return receive

        declared_length = request.headers.get("content-length", "")
        if declared_length.isdigit() and int(declared_length) > self.max_body_size:
            raise PayloadTooLargeError(self.max_body_size)
        raw_body = await _read_body(receive, self.max_body_size)
        parsed = _parse_body(raw_body, body_kind)
        sanitized = self.sanitizer.clean(parsed, query_pairs, {})
        _store(scope, sanitized, query_pairs)

        body = raw_body
        if parsed is not None and sanitized.body != parsed:
            body = _encode_body(sanitized.body, body_kind, raw_body)
            MutableHeaders(scope=scope)["content-length"] = str(len(body))

        body_replayed = False

        async def replay_receive() -> Message:
            nonlocal body_replayed
            if not body_replayed:
                body_replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay_receive


def _is_preflight(request: Request) -> bool:
    return (
        request.method == "OPTIONS"
        and "origin" in request.headers
        and "access-control-request-method" in request.headers
    )


def _body_kind(content_type: str) -> Optional[str]:
    media_type = content_type.split(";")[0].strip().lower()
    if media_type == JSON_CONTENT_TYPE or media_type.endswith("+json"):
        return "json"
    if media_type == FORM_CONTENT_TYPE:
        return "form"
    return None


async def _read_body(receive: Receive, limit: int) -> bytes:
    chunks = []
    size = 0
    while True:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            raise PayloadTooLargeError(limit)
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


def _parse_body(raw_body: bytes, body_kind: str) -> Any:
    if not raw_body:
        return None
    try:
        if body_kind == "json":
            return json.loads(raw_body)
        return parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True)
    except ValueError:
        # Left untouched; downstream validation reports it.
        return None


def _encode_body(value: Any, body_kind: str, raw_body: bytes) -> bytes:
    if body_kind == "json":
        return json.dumps(value, ensure_ascii=False).encode("utf-8")
    if isinstance(value, dict):
        return urlencode(value, doseq=True).encode("utf-8")
    return raw_body


def _store(scope: Scope, sanitized: SanitizedRequest, query_pairs: list) -> None:
    scope.setdefault("state", {})["sanitized"] = sanitized
    if not query_pairs:
        return
    query_string = urlencode(sanitized.query, doseq=True)
    if parse_qsl(query_string, keep_blank_values=True) != query_pairs:
        scope["query_string"] = query_string.encode("latin-1")


def install_request_pipeline(
    app: FastAPI,
    settings: Settings,
    diagnostic_sink: Optional[DiagnosticSink] = None,
    clock: Callable[[], float] = time.time,
) -> None:
    """Build the pipeline components and wire them into ``app``.

    Components are stored on ``app.state`` so framework-level error
    handlers and ``SanitizedRoute`` share them with the middleware.

    Args:
        app: The host FastAPI application. Must not have started yet.
        settings: Pipeline configuration.
        diagnostic_sink: Destination for diagnostic records. A sink on the
            root logger's handlers is created and started when omitted.
        clock: Epoch-seconds time source for the rate limiter.
    """
    if diagnostic_sink is None:
        diagnostic_sink = DiagnosticSink()
        diagnostic_sink.start()

    rate_limiter = RateLimiter(
        build_tiers(
            settings.rate_limit_general,
            settings.rate_limit_auth,
            settings.rate_limit_heavy,
            settings.auth_paths,
            settings.heavy_paths,
        )
    )
    header_policy = HeaderPolicy(settings.client_origins, settings.api_origins)
    sanitizer = Sanitizer(settings.allowed_html_fields, settings.allowed_repeated_params)
    classifier = ErrorClassifier(emit=diagnostic_sink.emit)

    app.state.settings = settings
    app.state.rate_limiter = rate_limiter
    app.state.header_policy = header_policy
    app.state.sanitizer = sanitizer
    app.state.error_classifier = classifier
    app.state.diagnostic_sink = diagnostic_sink

    register_error_handlers(app)
    app.add_middleware(
        RequestPipeline,
        rate_limiter=rate_limiter,
        header_policy=header_policy,
        sanitizer=sanitizer,
        classifier=classifier,
        include_stack=not settings.is_production,
        trust_forwarded_for=settings.trust_forwarded_for,
        clock=clock,
        max_body_size=settings.max_request_size_bytes,
    )
