"""
Courier Backend — Email Callback Route
========================================

What:  Receives delivery notifications from email providers (SendGrid
       webhooks, SES events relayed through SNS).
How:   The body decoder keeps JSON bodies on this route as raw text, so the
       handler parses the text itself. SNS notifications arrive labelled as
       text/plain and are relabelled before decoding.
Who:   Called by the email providers, not by browser clients.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from courier.exceptions import ApiValidationError
from courier.middleware.body_decoder import PARSED_BODY_STATE_KEY
from courier.schemas.errors import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/callback", tags=["Callbacks"])


def parse_event(raw: Any) -> Dict[str, Any]:
    """Parse the raw text body of a callback into a JSON document."""
    if not isinstance(raw, str):
        raise ApiValidationError("Callback body must be a JSON document")
    try:
        event = json.loads(raw)
    except ValueError as exc:
        raise ApiValidationError("Callback body is not valid JSON") from exc
    if not isinstance(event, (dict, list)):
        raise ApiValidationError("Callback body must be a JSON object or array")
    return event


@router.post(
    "/email",
    responses={400: {"description": "Unreadable callback", "model": ErrorResponse}},
    summary="Email delivery callback",
)
async def email_callback(request: Request) -> Dict[str, str]:
    event = parse_event(getattr(request.state, PARSED_BODY_STATE_KEY, None))
    events = event if isinstance(event, list) else [event]
    logger.info("Received %d email callback event(s)", len(events))
    return {"message": "OK"}
