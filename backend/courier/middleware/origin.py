r"""
Courier Backend — Origin Policy (CORS)
========================================

What:  Decides whether a cross-origin caller may read responses, including
       credentialed (cookie-bearing) ones.
How:   Starlette's CORSMiddleware with its origin check replaced by an
       `OriginPolicy` built from one configuration string.

Specification format (FRONTEND_URL):
    https://app.example.com           exact match
    /^https:\/\/.*\.example\.com$/    regex between slashes, searched
                                      anywhere in the Origin header (anchor
                                      it explicitly to match the whole origin)
"""

import re
from typing import Iterable, Optional, Pattern

from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

ALLOWED_METHODS = ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"]


class OriginPolicy:
    """
    Pure string/pattern evaluation of an Origin header.

    Built once at startup and shared read-only by every request.
    """

    def __init__(self, exact: Optional[str] = None, pattern: Optional[Pattern[str]] = None):
        self.exact = exact
        self.pattern = pattern

    @classmethod
    def parse(cls, spec: str) -> "OriginPolicy":
        spec = spec.strip()
        if len(spec) > 1 and spec.startswith("/") and spec.endswith("/"):
            return cls(pattern=re.compile(spec[1:-1]))
        return cls(exact=spec)

    def allows(self, origin: Optional[str]) -> bool:
        if not origin:
            return False
        if self.pattern is not None:
            return self.pattern.search(origin) is not None
        return origin == self.exact

    def __repr__(self) -> str:
        if self.pattern is not None:
            return f"OriginPolicy(pattern={self.pattern.pattern!r})"
        return f"OriginPolicy(exact={self.exact!r})"


class OriginPolicyMiddleware(CORSMiddleware):
    """
    CORS with credentials, answering only for origins the policy allows.

    Allowed origins are mirrored back in Access-Control-Allow-Origin (never
    `*`, which browsers reject for credentialed requests). Paths in
    `exempt_paths` (the health probe) skip CORS handling entirely.

    Requests from any other origin get no CORS headers at all. Their
    preflights end with an empty 204, so this stage never writes an error
    response of its own.
    """

    def __init__(
        self,
        app: ASGIApp,
        policy: OriginPolicy,
        exempt_paths: Iterable[str] = (),
    ):
        super().__init__(
            app,
            allow_origins=(),
            allow_methods=ALLOWED_METHODS,
            allow_headers=["*"],
            allow_credentials=True,
        )
        self.policy = policy
        self.exempt_paths = frozenset(exempt_paths)

    def is_allowed_origin(self, origin: str) -> bool:
        return self.policy.allows(origin)

    def preflight_response(self, request_headers: Headers) -> Response:
        if self.policy.allows(request_headers.get("origin")):
            response = super().preflight_response(request_headers)
            if response.status_code < 400:
                return response
        return Response(status_code=204)

    async def simple_response(
        self, scope: Scope, receive: Receive, send: Send, request_headers: Headers
    ) -> None:
        if not self.policy.allows(request_headers.get("origin")):
            await self.app(scope, receive, send)
            return
        await super().simple_response(scope, receive, send, request_headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)
