"""
Courier Backend — Request Logging Middleware
==============================================

What:  One structured log record per request/response pair.
How:   After the response is produced, builds a record with the request
       method, URL, headers and decoded body plus the final status code,
       runs the redaction rules over the request part, and logs it on the
       `courier.access` logger with the record in `extra`.
When:  Outside the error boundary, so failed requests are logged with the
       status the classifier chain chose.

Log Record (extra fields):
    {
        "req": {
            "method": "POST",
            "url": "/v1/transactional/email/send",
            "headers": {"authorization": "[REDACTED]", "content-type": "application/json"},
            "body": {"recipient": "...", "body": "[REDACTED]"}
        },
        "res": {"status_code": 201},
        "response_time_ms": 12.34
    }

What gets redacted (services/redaction.py):
    - Authorization and Cookie header values (the keys stay, marking how
      the call was authenticated)
    - attachment `data` payloads (filenames and other metadata stay)
    - free-text `body` fields

Health probe requests are not logged.
"""

import logging
import time
from typing import Any, Dict, Iterable, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from courier.middleware.body_decoder import PARSED_BODY_STATE_KEY
from courier.services.redaction import DEFAULT_REDACTION_RULES, RedactionRule, redact

logger = logging.getLogger("courier.access")


def collect_headers(request: Request) -> Dict[str, str]:
    """Headers as a plain dict; repeated headers are joined with ", "."""
    headers: Dict[str, str] = {}
    for name, value in request.headers.items():
        headers[name] = f"{headers[name]}, {value}" if name in headers else value
    return headers


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs the redacted request and its final status.

    Level by status:
        5xx → ERROR, 4xx → WARNING, everything else → INFO
    """

    def __init__(
        self,
        app: ASGIApp,
        exempt_paths: Iterable[str] = (),
        rules: Tuple[RedactionRule, ...] = DEFAULT_REDACTION_RULES,
    ):
        super().__init__(app)
        self.exempt_paths = frozenset(exempt_paths)
        self.rules = rules

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        body: Any = getattr(request.state, PARSED_BODY_STATE_KEY, None)
        req = redact(
            {
                "method": request.method,
                "url": url,
                "headers": collect_headers(request),
                "body": body if body is not None else {},
            },
            self.rules,
        )

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "Incoming HTTP Request %s %s",
            request.method,
            url,
            extra={
                "req": req,
                "res": {"status_code": status},
                "response_time_ms": round(duration_ms, 2),
            },
        )
        return response
