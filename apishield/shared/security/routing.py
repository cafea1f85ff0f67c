"""
Route class that sanitizes path parameters.

Path parameters only exist after routing, so they cannot be cleaned by
the request pipeline. Routers created with ``route_class=SanitizedRoute``
clean them right before the endpoint runs.
"""

import dataclasses
from typing import Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute


class SanitizedRoute(APIRoute):
    """APIRoute that runs path parameters through the app's Sanitizer."""

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def sanitized_route_handler(request: Request) -> Response:
            sanitizer = getattr(request.app.state, "sanitizer", None)
            if sanitizer is not None and request.path_params:
                params = sanitizer.clean_value(dict(request.path_params))
                request.scope["path_params"] = params
                sanitized = getattr(request.state, "sanitized", None)
                if sanitized is not None:
                    request.state.sanitized = dataclasses.replace(sanitized, params=params)
            return await original_route_handler(request)

        return sanitized_route_handler
