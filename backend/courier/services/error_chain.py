"""
Courier Backend — Error Classifier Chain
==========================================

What:  Turns any exception raised while handling a request into one
       `{code, message}` response.
How:   An ordered list of resolvers, each asked in turn whether it claims
       the error. The first one that returns an envelope wins. If none does,
       the fault reporter records the error and the fallback resolver
       produces the generic 500.
Who:   Driven from two places over the same chain instance: FastAPI's
       exception handlers (errors that stay inside routing) and
       ErrorHandlingMiddleware (everything else).

Resolution order:
    1. RequestValidationResolver   schema validation failed      → 400 invalid_request
    2. MalformedBodyResolver       body could not be decoded     → 400 malformed_request
    3. DomainErrorResolver         business code raised ApiError → status/code as raised
    4. HttpExceptionResolver       routing 404/405, HTTPException → its status, phrase as code
    5. UnexpectedErrorResolver     anything else (after report)  → 500 internal_server

Resolvers only read the error. A resolver that does not claim an error
returns None and leaves it exactly as it found it.
"""

import logging
import traceback
from http import HTTPStatus
from typing import Iterable, List, Optional, Sequence

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from courier.exceptions import (
    BODY_PARSE_ERROR_TYPES,
    ApiError,
    ApiInternalServerError,
    ApiMalformError,
    ApiValidationError,
)
from courier.schemas.errors import ErrorResponse
from courier.services.telemetry import FaultReporter, TraceContext, get_trace_context

logger = logging.getLogger(__name__)


class ErrorResolver:
    """Common capability of every chain link."""

    def try_resolve(self, exc: BaseException) -> Optional[ApiError]:
        """Return the envelope for `exc`, or None to defer to the next link."""
        raise NotImplementedError


class RequestValidationResolver(ErrorResolver):
    """Claims request-schema validation failures raised by FastAPI."""

    def try_resolve(self, exc: BaseException) -> Optional[ApiError]:
        if not isinstance(exc, RequestValidationError):
            return None
        return ApiValidationError(format_validation_errors(exc.errors()))


class MalformedBodyResolver(ErrorResolver):
    """
    Claims body decoding failures by their technical sub-code.

    The sub-code and technical message are logged for operators; the
    caller only ever sees "Malformed request body".
    """

    def try_resolve(self, exc: BaseException) -> Optional[ApiError]:
        error_type = getattr(exc, "type", None)
        if not isinstance(error_type, str) or error_type not in BODY_PARSE_ERROR_TYPES:
            return None
        logger.info(
            "Malformed request",
            extra={"error": {"message": str(exc), "type": error_type}},
        )
        return ApiMalformError()


class DomainErrorResolver(ErrorResolver):
    """Forwards errors raised by business code with their own status and code."""

    def try_resolve(self, exc: BaseException) -> Optional[ApiError]:
        if isinstance(exc, ApiError):
            return exc
        return None


class HttpExceptionResolver(ErrorResolver):
    """
    Claims framework HTTP errors (unknown route, wrong method) and business
    code raising HTTPException directly.

    The code is the snake-cased status phrase (404 → not_found,
    405 → method_not_allowed).
    """

    def try_resolve(self, exc: BaseException) -> Optional[ApiError]:
        if not isinstance(exc, StarletteHTTPException):
            return None
        try:
            phrase = HTTPStatus(exc.status_code).phrase
        except ValueError:
            phrase = "HTTP Error"
        message = exc.detail if isinstance(exc.detail, str) and exc.detail else phrase
        return ApiError(exc.status_code, phrase.lower().replace(" ", "_").replace("-", "_"), message)


class UnexpectedErrorResolver:
    """
    Last link: always resolves, to a 500.

    Logs the full stack and the chained causes at ERROR, then answers with
    a generic message. When the request is traced the message carries the
    trace id so support can find the failing request from a user report.
    """

    def resolve(self, exc: BaseException, trace_context: Optional[TraceContext]) -> ApiError:
        trace_id = trace_context.trace_id if trace_context is not None else None
        message = "Internal Server Error."
        if trace_id:
            message = (
                f"Internal Server Error. Please reach out to us with tracking ID "
                f"{trace_id} for more info."
            )

        logger.error(
            "Unexpected error occurred",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={
                "trace_id": trace_id,
                "error": {
                    "message": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                    "parent": repr(exc.__cause__) if exc.__cause__ is not None else None,
                    "original": repr(exc.__context__) if exc.__context__ is not None else None,
                },
            },
        )
        return ApiInternalServerError(message)


def default_resolvers() -> List[ErrorResolver]:
    return [
        RequestValidationResolver(),
        MalformedBodyResolver(),
        DomainErrorResolver(),
        HttpExceptionResolver(),
    ]


class ErrorClassifierChain:
    """
    Single driver over the ordered resolvers.

    Args:
        fault_reporter:  Records errors no resolver claimed
        resolvers:       Ordered links tried before the fallback
                         (default: validation → malformed body → domain → HTTP)
        fallback:        Resolver for unclaimed errors
    """

    def __init__(
        self,
        fault_reporter: FaultReporter,
        resolvers: Optional[Iterable[ErrorResolver]] = None,
        fallback: Optional[UnexpectedErrorResolver] = None,
    ):
        self.fault_reporter = fault_reporter
        self.resolvers: Sequence[ErrorResolver] = tuple(
            resolvers if resolvers is not None else default_resolvers()
        )
        self.fallback = fallback or UnexpectedErrorResolver()

    def classify(self, exc: BaseException, trace_context: Optional[TraceContext] = None) -> ApiError:
        for resolver in self.resolvers:
            envelope = resolver.try_resolve(exc)
            if envelope is not None:
                return envelope

        self.fault_reporter.capture(exc, trace_context)
        return self.fallback.resolve(exc, trace_context)

    async def handle(self, request: Request, exc: Exception) -> JSONResponse:
        """Exception-handler entry point: classify, then emit."""
        envelope = self.classify(exc, get_trace_context(request.scope))
        return emit_error_response(envelope)


# ══════════════════════════════════════════════════════════════════════════
# Response emission
# ══════════════════════════════════════════════════════════════════════════

def emit_error_response(error: ApiError) -> JSONResponse:
    """Serialize an envelope as exactly {code, message} with its status."""
    body = ErrorResponse(code=error.error_code, message=error.message)
    return JSONResponse(status_code=error.http_status_code, content=body.model_dump())


def format_validation_errors(errors: Sequence[dict]) -> str:
    """
    Build a caller-facing message from pydantic/FastAPI error entries.

    Example:
        [{"loc": ("body", "recipient"), "msg": "Field required"}]
        → "body.recipient: Field required"
    """
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "Invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Request validation failed"
