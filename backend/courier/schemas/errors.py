"""
Courier Backend — Error Response Schema
=========================================

What:  The one JSON shape every error path returns.
Who:   Serialized by the response emitter in services/error_chain.py and
       referenced by routes in their OpenAPI `responses` declarations.

Contract:
    {"code": "<machine-readable code>", "message": "<human-readable text>"}

    No other fields, whichever handler resolved the error.
"""

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """
    Standardized error response body.

    Example:
        {
            "code": "malformed_request",
            "message": "Malformed request body"
        }
    """

    model_config = ConfigDict(extra="forbid")

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
