"""
Courier Backend — Session Trace Binder
========================================

What:  Attaches the caller's identity to the request's trace context, so a
       fault raised anywhere later is attributed to a user without passing
       the identity through every call.
How:   A pluggable resolver reads the identity from the ASGI scope. The
       default reads a Starlette-style session mapping (`scope["session"]`)
       populated by whatever session layer the host installs.
When:  Just before routing. Never blocks or rejects a request.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Scope

from courier.services.telemetry import get_trace_context

logger = logging.getLogger(__name__)

API_KEY_TAG = "uses_api_key"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: Optional[str] = None
    uses_api_key: bool = False


IdentityResolver = Callable[[Scope], Optional[CallerIdentity]]


def session_identity(scope: Scope) -> Optional[CallerIdentity]:
    """
    Read the caller from the session mapping in the scope.

    Expected shape (anything else is treated as "no identity"):
        {"user": {"id": 42}, "api_key": True}
    """
    session = scope.get("session")
    if not isinstance(session, Mapping):
        return None

    user = session.get("user")
    user_id = user.get("id") if isinstance(user, Mapping) else None
    uses_api_key = bool(session.get("api_key"))

    if user_id is None and not uses_api_key:
        return None
    return CallerIdentity(
        user_id=str(user_id) if user_id is not None else None,
        uses_api_key=uses_api_key,
    )


class SessionTraceMiddleware(BaseHTTPMiddleware):
    """
    Binds caller identity and auth-method tag to the active TraceContext.

    Side effect only: the request continues unchanged whatever the outcome.
    """

    def __init__(
        self,
        app: ASGIApp,
        resolver: IdentityResolver = session_identity,
        exempt_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self.resolver = resolver
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path not in self.exempt_paths:
            self.bind(request.scope)
        return await call_next(request)

    def bind(self, scope: Scope) -> None:
        trace_context = get_trace_context(scope)
        identity = self.resolver(scope)
        if trace_context is None or identity is None:
            return

        if identity.user_id is not None:
            trace_context.bind_user(identity.user_id)
        if identity.uses_api_key:
            trace_context.set_tag(API_KEY_TAG, "true")
        logger.debug("Bound caller %s to trace", identity)
