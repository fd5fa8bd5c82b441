"""
Courier Backend — Custom Exception Hierarchy
==============================================

What:  Defines the error envelope raised by business code and the technical
       fault raised by the body decoder.
How:   `ApiError` carries an HTTP status, a machine-readable code and a
       human-readable message. The classifier chain (services/error_chain.py)
       reduces every failure to one of these before the response is written.
Who:   Raised by business routes and by the chain itself; `BodyParseError` is
       raised only by the body decoder middleware.

Exception Hierarchy:
    ApiError (base, caller-chosen status/code)  → forwarded verbatim
    ├── ApiValidationError      → 400 invalid_request
    ├── ApiMalformError         → 400 malformed_request
    ├── ApiAuthenticationError  → 401 unauthorized
    ├── ApiAuthorizationError   → 403 forbidden
    ├── ApiNotFoundError        → 404 not_found
    └── ApiInternalServerError  → 500 internal_server

    BodyParseError (technical, classified by its `type` sub-code)

Only `code` and `message` ever reach the client. Anything else an error
carries (sub-codes, nested causes) is for server-side logs.
"""

from typing import FrozenSet


class ApiError(Exception):
    """
    Base class for errors that already know how they should be answered.

    Business code raises this (or a subclass) to reject a request with a
    specific status and code. The classifier chain forwards both values
    untouched.

    Attributes:
        http_status_code:  Status code of the response
        error_code:        Machine-readable code (`code` in the response body)
        message:           Human-readable description (`message` in the body)
    """

    def __init__(self, http_status_code: int, error_code: str, message: str):
        self.http_status_code = http_status_code
        self.error_code = error_code
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(http_status_code={self.http_status_code!r}, "
            f"error_code={self.error_code!r}, message={self.message!r})"
        )


class ApiValidationError(ApiError):
    """
    The request failed schema validation.

    HTTP:  400 Bad Request
    The message names the offending fields so the caller can fix the input.
    """

    def __init__(self, message: str = "Request validation failed"):
        super().__init__(400, "invalid_request", message)


class ApiMalformError(ApiError):
    """
    The request body could not be read or parsed.

    HTTP:  400 Bad Request
    The technical reason (charset, size, syntax) is logged, not returned.
    """

    def __init__(self, message: str = "Malformed request body"):
        super().__init__(400, "malformed_request", message)


class ApiAuthenticationError(ApiError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(401, "unauthorized", message)


class ApiAuthorizationError(ApiError):
    def __init__(self, message: str = "You are not allowed to perform this action"):
        super().__init__(403, "forbidden", message)


class ApiNotFoundError(ApiError):
    def __init__(self, message: str = "The requested resource was not found"):
        super().__init__(404, "not_found", message)


class ApiInternalServerError(ApiError):
    """
    Response for failures nobody claimed.

    HTTP:  500 Internal Server Error
    The message may embed a trace id for support requests, nothing else.
    """

    def __init__(self, message: str = "Internal Server Error."):
        super().__init__(500, "internal_server", message)


# ══════════════════════════════════════════════════════════════════════════
# Body decoding faults
# ══════════════════════════════════════════════════════════════════════════

ENCODING_UNSUPPORTED = "encoding.unsupported"
ENTITY_PARSE_FAILED = "entity.parse.failed"
ENTITY_VERIFY_FAILED = "entity.verify.failed"
REQUEST_ABORTED = "request.aborted"
REQUEST_SIZE_INVALID = "request.size.invalid"
STREAM_ENCODING_SET = "stream.encoding.set"
PARAMETERS_TOO_MANY = "parameters.too.many"
CHARSET_UNSUPPORTED = "charset.unsupported"
ENTITY_TOO_LARGE = "entity.too.large"

# Closed set: the malformed-body resolver matches these verbatim.
BODY_PARSE_ERROR_TYPES: FrozenSet[str] = frozenset(
    {
        ENCODING_UNSUPPORTED,
        ENTITY_PARSE_FAILED,
        ENTITY_VERIFY_FAILED,
        REQUEST_ABORTED,
        REQUEST_SIZE_INVALID,
        STREAM_ENCODING_SET,
        PARAMETERS_TOO_MANY,
        CHARSET_UNSUPPORTED,
        ENTITY_TOO_LARGE,
    }
)


class BodyParseError(Exception):
    """
    Raised by the body decoder when the transport-level body is unusable.

    Attributes:
        type:         Technical sub-code, one of BODY_PARSE_ERROR_TYPES
        message:      Technical description (logged, never returned)
        status_code:  Status the decoder associates with the failure
                      (informational; the chain answers every variant with 400)
    """

    def __init__(self, type: str, message: str, status_code: int = 400):
        self.type = type
        self.message = message
        self.status_code = status_code
        super().__init__(message)
