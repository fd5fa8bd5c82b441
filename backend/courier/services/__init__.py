# Services package init
"""
Courier Backend — Services Layer
==================================

What:  Pipeline logic that does not depend on the HTTP transport.
How:   Middleware and exception handlers delegate to these modules, which
       can be unit-tested with plain Python values.

Service Inventory:
    - error_chain:  ErrorClassifierChain, its resolvers and the response emitter
    - redaction:    Declarative redaction rules applied to request log records
    - telemetry:    Telemetry (tracing lifecycle), TraceContext, FaultReporter
"""
