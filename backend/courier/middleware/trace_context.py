"""
Courier Backend — Trace Context Middleware
============================================

What:  Opens a server span for each request and exposes it to the rest of
       the pipeline as a `TraceContext` on `request.state.trace`.
How:   Starts the span from the Telemetry service object passed in at
       construction; the span is closed when the response is returned.
When:  Wraps every later stage, so the context exists before the session
       trace binder and the error chain look for it.

The trace id, when tracing is active, is returned in the X-Trace-ID header
so clients can quote it in support requests.
"""

from opentelemetry.trace import SpanKind
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from courier.services.telemetry import TRACE_STATE_KEY, Telemetry, TraceContext

TRACE_ID_HEADER = "X-Trace-ID"


class TraceContextMiddleware(BaseHTTPMiddleware):
    """
    Creates and tears down the per-request TraceContext.

    Behavior:
        1. Start a SERVER span named "<METHOD> <path>"
        2. Store a TraceContext wrapping it in request.state
        3. Process the request
        4. Record the status code and add X-Trace-ID to the response
    """

    def __init__(self, app: ASGIApp, telemetry: Telemetry):
        super().__init__(app)
        self.telemetry = telemetry

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        with self.telemetry.tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            kind=SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "http.scheme": request.url.scheme,
                "http.user_agent": request.headers.get("user-agent", ""),
            },
        ) as span:
            trace_context = TraceContext(span=span)
            setattr(request.state, TRACE_STATE_KEY, trace_context)

            response = await call_next(request)

            span.set_attribute("http.status_code", response.status_code)
            if trace_context.trace_id:
                response.headers[TRACE_ID_HEADER] = trace_context.trace_id
            return response
