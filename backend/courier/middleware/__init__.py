# Middleware package init
"""
Courier Backend — Middleware Package
======================================

What:  The ingress pipeline: cross-cutting request/response handling applied
       around the business routes.

Middleware Chain (outermost first):
    Request → [Content-Type Override] → [Trace Context] → [Security Headers]
            → [Cache Control] → [Origin Policy] → [Request Logging]
            → [Error Boundary] → [Body Decoder] → [Session Trace] → Routes

    Why this order:
    1. Content-Type Override: must rewrite headers before the body is decoded
    2. Trace Context: the span exists before anything can fail
    3. Security Headers / Cache Control: applied to every response, errors included
    4. Origin Policy: CORS headers on every response, errors included
    5. Request Logging: sees the final status chosen by the error chain
    6. Error Boundary: every failure below it becomes a {code, message} response
    7. Body Decoder: decodes and size-checks the body; failures are classified
    8. Session Trace: binds the caller to the trace right before routing

    The health probe route is exempt from origin policy, request logging and
    session trace binding.
"""
