"""
Courier Backend — Application Package Initializer
=================================================

What: Marks the `courier` directory as a Python package.
Who:  Used implicitly by Python's import system and explicitly by pytest and uvicorn.

Architecture Note:
    The package is the HTTP ingress pipeline of the Courier API. It owns
    everything that happens to a request before and after the business
    routes run:

    ┌─────────────────────────────────────┐
    │     Middleware (ingress pipeline)   │  ← header rewrites, body decoding,
    │                                     │    CORS, logging, security headers
    ├─────────────────────────────────────┤
    │     Routes (health + /v1 surface)   │  ← business routers are plugged in
    ├─────────────────────────────────────┤
    │     Services (errors, redaction,    │  ← pure logic, testable without HTTP
    │     telemetry)                      │
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
