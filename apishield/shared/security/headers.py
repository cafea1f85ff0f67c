"""
Secure HTTP headers.

Adds security-related headers to every response:
- Content-Security-Policy
- Strict-Transport-Security
- X-Frame-Options
- X-Content-Type-Options
- Referrer-Policy
- X-XSS-Protection

Cross-origin credentials are only granted to the configured client
origins. Other origins are not rejected here; authorization downstream
is the real gate.

No business logic. Pure function over configuration.
"""

from collections.abc import Iterable, MutableMapping
from typing import Optional

SELF = "'self'"
UNSAFE_INLINE = "'unsafe-inline'"

CSP_DIRECTIVES: dict[str, tuple[str, ...]] = {
    "default-src": (SELF,),
    "script-src": (SELF, UNSAFE_INLINE, "https://cdn.jsdelivr.net"),
    "style-src": (SELF, UNSAFE_INLINE, "https://fonts.googleapis.com"),
    "img-src": (SELF, "data:", "https://res.cloudinary.com"),
    "font-src": (SELF, "https://fonts.gstatic.com"),
    "connect-src": (SELF,),
    "object-src": ("'none'",),
    "base-uri": (SELF,),
    "frame-ancestors": ("'none'",),
}

SECURE_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "same-origin",
    "X-XSS-Protection": "1; mode=block",
}

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_ALLOW_HEADERS = "Origin, X-Requested-With, Content-Type, Accept, Authorization"


def build_csp(connect_sources: Iterable[str] = ()) -> str:
    """Render the Content-Security-Policy value.

    Raises:
        ValueError: If a connect source is a wildcard.
    """
    directives = dict(CSP_DIRECTIVES)
    extra = tuple(connect_sources)
    for source in extra:
        if "*" in source:
            raise ValueError(f"Wildcard CSP source not allowed: {source}")
    directives["connect-src"] = directives["connect-src"] + extra
    return "; ".join(
        f"{name} {' '.join(sources)}" for name, sources in directives.items()
    )


class HeaderPolicy:
    """Attaches transport/content security headers and the CORS echo.

    Args:
        allowed_origins: Origins allowed to share credentials.
        connect_sources: API origins added to the CSP connect-src directive.
    """

    def __init__(
        self, allowed_origins: Iterable[str] = (), connect_sources: Iterable[str] = ()
    ) -> None:
        self._allowed_origins = frozenset(origin.rstrip("/") for origin in allowed_origins)
        self._fixed = {
            "Content-Security-Policy": build_csp(connect_sources),
            **SECURE_HEADERS,
        }

    @property
    def fixed_headers(self) -> dict[str, str]:
        """Security headers attached to every response."""
        return dict(self._fixed)

    def is_allowed_origin(self, origin: Optional[str]) -> bool:
        """Whether ``origin`` may receive the credentialed CORS echo."""
        return bool(origin) and origin.rstrip("/") in self._allowed_origins

    def apply(self, headers: MutableMapping[str, str], origin: Optional[str] = None) -> None:
        """Set the security headers and, for allowed origins, the CORS echo."""
        for header_name, header_value in self._fixed.items():
            headers[header_name] = header_value
        if self.is_allowed_origin(origin):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Access-Control-Allow-Credentials"] = "true"
            vary = headers.get("Vary")
            headers["Vary"] = f"{vary}, Origin" if vary and "Origin" not in vary else vary or "Origin"

    def preflight_headers(self, origin: Optional[str]) -> dict[str, str]:
        """Extra headers for an OPTIONS preflight answer."""
        if not self.is_allowed_origin(origin):
            return {}
        return {
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        }
