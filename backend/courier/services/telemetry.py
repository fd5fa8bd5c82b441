"""
Courier Backend — Tracing & Fault Reporting
=============================================

What:  The tracing/error-reporting service object, the per-request trace
       context and the fault reporter.
How:   OpenTelemetry SDK. `Telemetry` owns its own TracerProvider (never the
       global one), so several applications, and tests, can coexist in one
       process. Each request gets a server span wrapped in a `TraceContext`
       that is stored on the request state and passed around explicitly.
Who:   Constructed by the caller of `create_app()` (main.py lifespan),
       consumed by the trace context middleware, the session trace binder
       and the error classifier chain.
When:  `start()` at server startup, `shutdown()` at exit (flushes spans).

Who may touch a TraceContext:
    - TraceContextMiddleware   creates it and ends the span
    - SessionTraceMiddleware   binds caller identity / tags
    - FaultReporter            reads it to record an exception
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from courier import __version__
from courier.config import Settings

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "courier.ingress"


@dataclass
class TraceContext:
    """
    Request-scoped view of the active server span.

    Carries no business state: only what is needed to correlate a fault
    with a request and a caller.
    """

    span: Span
    user_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def trace_id(self) -> Optional[str]:
        """32-char hex trace id, or None when tracing is not recording."""
        span_context = self.span.get_span_context()
        if not span_context.is_valid:
            return None
        return format(span_context.trace_id, "032x")

    def bind_user(self, user_id: str) -> None:
        self.user_id = user_id
        self.span.set_attribute("enduser.id", user_id)

    def set_tag(self, key: str, value: str) -> None:
        self.tags[key] = value
        self.span.set_attribute(key, value)


class FaultReporter:
    """
    Records unexpected errors in the tracing backend.

    The exception is attached to the request span as a span event along
    with the caller identity and tags bound to the trace context, and the
    span status is set to ERROR.
    """

    def capture(self, exc: BaseException, trace_context: Optional[TraceContext]) -> None:
        if trace_context is None:
            logger.debug("No trace context; %s not reported", type(exc).__name__)
            return

        attributes: Dict[str, str] = dict(trace_context.tags)
        if trace_context.user_id is not None:
            attributes["enduser.id"] = trace_context.user_id

        span = trace_context.span
        span.record_exception(exc, attributes=attributes)
        span.set_status(Status(StatusCode.ERROR, f"{type(exc).__name__}: {exc}"))


class Telemetry:
    """
    Tracing service object with an explicit lifecycle.

    Until `start()` is called (or when `enabled=False`) the tracer is a
    no-op: spans are created but carry an invalid context, so no trace id
    is surfaced anywhere.

    Args:
        service_name:     `service.name` resource attribute
        environment:      `deployment.environment` resource attribute
        otlp_endpoint:    OTLP gRPC collector endpoint; None disables export
        console_export:   Also print finished spans to stdout
        span_processors:  Additional processors (e.g., in-memory exporter)
        enabled:          False keeps the no-op tracer even after start()
    """

    def __init__(
        self,
        service_name: str = "courier-backend",
        environment: str = "development",
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
        span_processors: Iterable[SpanProcessor] = (),
        enabled: bool = True,
    ):
        self.service_name = service_name
        self.environment = environment
        self.otlp_endpoint = otlp_endpoint
        self.console_export = console_export
        self.enabled = enabled
        self._extra_processors = list(span_processors)
        self._provider: Optional[TracerProvider] = None
        self._tracer: trace.Tracer = trace.NoOpTracer()
        self.fault_reporter = FaultReporter()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Telemetry":
        return cls(
            service_name=settings.service_name,
            environment=settings.environment,
            otlp_endpoint=settings.trace_endpoint or None,
            console_export=settings.trace_console_export,
        )

    @property
    def tracer(self) -> trace.Tracer:
        return self._tracer

    @property
    def started(self) -> bool:
        return self._provider is not None

    def start(self) -> None:
        """Build the tracer provider and its exporters."""
        if not self.enabled:
            logger.info("Tracing disabled")
            return
        if self._provider is not None:
            return

        resource = Resource.create({
            SERVICE_NAME: self.service_name,
            SERVICE_VERSION: __version__,
            "deployment.environment": self.environment,
        })
        provider = TracerProvider(resource=resource)

        if self.otlp_endpoint:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=self.otlp_endpoint, insecure=True))
            )
            logger.info("Tracing: OTLP exporter configured -> %s", self.otlp_endpoint)

        if self.console_export:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            logger.info("Tracing: console exporter enabled")

        for processor in self._extra_processors:
            provider.add_span_processor(processor)

        self._provider = provider
        self._tracer = provider.get_tracer(INSTRUMENTATION_NAME, __version__)
        logger.info("Tracing initialized: %s (%s)", self.service_name, self.environment)

    def shutdown(self) -> None:
        """Flush pending spans and release exporters."""
        if self._provider is None:
            return
        self._provider.force_flush()
        self._provider.shutdown()
        self._provider = None
        self._tracer = trace.NoOpTracer()
        logger.info("Tracing shut down")


# ══════════════════════════════════════════════════════════════════════════
# Request-state access
# ══════════════════════════════════════════════════════════════════════════

# Key under the ASGI scope "state" dict (what `request.state.trace` reads)
TRACE_STATE_KEY = "trace"


def get_trace_context(scope: Mapping[str, Any]) -> Optional[TraceContext]:
    """Trace context of the request owning `scope`, if one was created."""
    state = scope.get("state") or {}
    trace_context = state.get(TRACE_STATE_KEY)
    if isinstance(trace_context, TraceContext):
        return trace_context
    return None
