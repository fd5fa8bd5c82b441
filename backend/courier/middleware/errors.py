"""
Courier Backend — Error Boundary Middleware
=============================================

What:  Catches every exception raised by the stages it wraps (body decoding,
       session trace binding, routing, business handlers) and hands it to
       the ErrorClassifierChain, which writes the only error response.
When:  Inside RequestLoggingMiddleware, so the logged status code is the one
       the chain chose.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from courier.services.error_chain import ErrorClassifierChain


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, chain: ErrorClassifierChain):
        super().__init__(app)
        self.chain = chain

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            return await self.chain.handle(request, exc)
