"""
Courier Backend — Response Header Policies
============================================

What:  Headers attached to every response: cache suppression and the
       browser hardening set (HSTS and friends).
How:   Two small Starlette middlewares. Both overwrite whatever the route set,
       and both run on error responses too since they wrap the error boundary.
"""

from typing import Dict

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

NO_CACHE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    # HTTP/1.0 clients ignore Cache-Control
    "Pragma": "no-cache",
}

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "base-uri 'self'",
    "font-src 'self' https: data:",
    "form-action 'self'",
    "frame-ancestors 'self'",
    "img-src 'self' data:",
    "object-src 'none'",
    "script-src 'self'",
    "script-src-attr 'none'",
    "style-src 'self' https: 'unsafe-inline'",
    "upgrade-insecure-requests",
])


def security_headers(hsts_max_age: int) -> Dict[str, str]:
    """The fixed hardening header set."""
    return {
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
        "Origin-Agent-Cluster": "?1",
        "Referrer-Policy": "no-referrer",
        "Strict-Transport-Security": f"max-age={hsts_max_age}; includeSubDomains",
        "X-Content-Type-Options": "nosniff",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "X-Frame-Options": "SAMEORIGIN",
        "X-Permitted-Cross-Domain-Policies": "none",
        "X-XSS-Protection": "0",
    }


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Marks every response as non-cacheable (legacy browsers included)."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        response.headers.update(NO_CACHE_HEADERS)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Attaches the hardening header set to every response.

    Stateless: the header values are computed once at construction.
    """

    def __init__(self, app: ASGIApp, hsts_max_age: int = 31_622_400):
        super().__init__(app)
        self.headers = security_headers(hsts_max_age)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        response.headers.update(self.headers)
        return response
