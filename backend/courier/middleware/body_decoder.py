"""
Courier Backend — Body Decoding Middleware
============================================

What:  Reads the request body once, enforces size ceilings and decodes it
       into a structured value stored on the request state.
How:   Pure ASGI middleware. The raw bytes are buffered (with the limit
       checked while reading), decoded by one of three decoders, and then
       replayed unchanged to the application so route handlers can still
       read the body themselves.
Who:   Feeds `request.state.parsed_body` to RequestLoggingMiddleware and to
       business handlers.
When:  After the content-type override, inside the error boundary: every
       failure is raised as `BodyParseError` and classified by the chain.

Decoders:
    text: application/json on the text routes (email delivery callbacks).
            Kept as a string so signatures computed over the exact bytes
            still verify; the handler parses the JSON itself.
    json: application/json elsewhere. Strict: top-level object or array.
    form: application/x-www-form-urlencoded, flat key/value pairs.

    JSON and form share one ceiling: a multiple of the business payload
    limit, so bodies just above the business limit are rejected by business
    validation with a descriptive message, not here.

Failure sub-codes (BodyParseError.type):
    entity.too.large      decoded body over the ceiling, or compressed body
                          over the ceiling plus framing slack
    request.size.invalid  received length differs from Content-Length
    request.aborted       client disconnected before the body was complete
    encoding.unsupported  unknown Content-Encoding or text charset
    charset.unsupported   JSON charset not utf-*, form charset not utf-8
    entity.parse.failed   syntax error, invalid bytes or corrupt compression
    parameters.too.many   form field count over the parameter limit
    entity.verify.failed  the optional verify hook rejected the body

    `stream.encoding.set` is part of the recognized set but cannot occur
    with ASGI receive channels.
"""

import codecs
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from courier.exceptions import (
    CHARSET_UNSUPPORTED,
    ENCODING_UNSUPPORTED,
    ENTITY_PARSE_FAILED,
    ENTITY_TOO_LARGE,
    ENTITY_VERIFY_FAILED,
    PARAMETERS_TOO_MANY,
    REQUEST_ABORTED,
    REQUEST_SIZE_INVALID,
    BodyParseError,
)

logger = logging.getLogger(__name__)

# Key under the ASGI scope "state" dict (what `request.state.parsed_body` reads)
PARSED_BODY_STATE_KEY = "parsed_body"

JSON_MEDIA_TYPE = "application/json"
FORM_MEDIA_TYPE = "application/x-www-form-urlencoded"

SUPPORTED_CONTENT_ENCODINGS = {"identity", "gzip", "deflate"}

# Slack for compressed bodies: gzip framing plus deflate block headers
COMPRESSED_OVERHEAD = 1024

BodyVerifier = Callable[[Scope, bytes], None]


# ══════════════════════════════════════════════════════════════════════════
# Header helpers
# ══════════════════════════════════════════════════════════════════════════

def parse_content_type(value: str) -> Tuple[str, Dict[str, str]]:
    """
    Split a Content-Type header into media type and parameters.

    Example:
        'text/plain; charset="UTF-8"' → ("text/plain", {"charset": "UTF-8"})
    """
    media_type, *raw_params = value.split(";")
    params = {}
    for raw in raw_params:
        key, sep, val = raw.partition("=")
        if sep:
            params[key.strip().lower()] = val.strip().strip('"')
    return media_type.strip().lower(), params


def has_body(headers: Headers) -> bool:
    """A request declares a body through Transfer-Encoding or Content-Length."""
    if "transfer-encoding" in headers:
        return True
    return headers.get("content-length", "").strip().isdigit()


def matches_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


# ══════════════════════════════════════════════════════════════════════════
# Reading
# ══════════════════════════════════════════════════════════════════════════

async def read_body(receive: Receive, headers: Headers, limit: int) -> bytes:
    """
    Buffer the whole body from `receive`, inflating it if compressed.

    Raises:
        BodyParseError: see module docstring for the sub-codes
    """
    encoding = headers.get("content-encoding", "identity").strip().lower() or "identity"
    if encoding not in SUPPORTED_CONTENT_ENCODINGS:
        raise BodyParseError(
            ENCODING_UNSUPPORTED, f'unsupported content encoding "{encoding}"', 415
        )

    # The ceiling applies to the decoded bytes. Compressed input is capped
    # separately and its inflated size is checked in inflate().
    read_limit = limit if encoding == "identity" else compressed_limit(limit)

    # Content-Length describes the encoded bytes
    expected: Optional[int] = None
    declared = headers.get("content-length", "").strip()
    if declared.isdigit():
        expected = int(declared)
        if expected > read_limit:
            raise BodyParseError(ENTITY_TOO_LARGE, "request entity too large", 413)

    chunks: List[bytes] = []
    received = 0
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            raise BodyParseError(REQUEST_ABORTED, "request aborted", 400)
        chunk = message.get("body", b"")
        received += len(chunk)
        if received > read_limit:
            raise BodyParseError(ENTITY_TOO_LARGE, "request entity too large", 413)
        chunks.append(chunk)
        if not message.get("more_body", False):
            break

    if expected is not None and received != expected:
        raise BodyParseError(
            REQUEST_SIZE_INVALID, "request size did not match content length", 400
        )

    raw = b"".join(chunks)
    if encoding != "identity":
        raw = inflate(raw, encoding, limit)
    return raw


def compressed_limit(limit: int) -> int:
    """Largest compressed body read for a decoded ceiling of `limit` bytes."""
    return limit + limit // 100 + COMPRESSED_OVERHEAD


def inflate(raw: bytes, encoding: str, limit: int) -> bytes:
    """Decompress a gzip/deflate body without producing more than `limit` bytes."""
    wbits = 16 + zlib.MAX_WBITS if encoding == "gzip" else zlib.MAX_WBITS
    decompressor = zlib.decompressobj(wbits)
    try:
        data = decompressor.decompress(raw, limit + 1)
    except zlib.error as exc:
        raise BodyParseError(ENTITY_PARSE_FAILED, f"invalid {encoding} body: {exc}", 400) from exc
    if len(data) > limit:
        raise BodyParseError(ENTITY_TOO_LARGE, "request entity too large", 413)
    if not decompressor.eof:
        raise BodyParseError(ENTITY_PARSE_FAILED, f"truncated {encoding} body", 400)
    return data


# ══════════════════════════════════════════════════════════════════════════
# Decoders
# ══════════════════════════════════════════════════════════════════════════

def _decode(raw: bytes, charset: str) -> str:
    try:
        codecs.lookup(charset)
    except LookupError as exc:
        raise BodyParseError(ENCODING_UNSUPPORTED, "specified encoding unsupported", 415) from exc
    try:
        return raw.decode(charset)
    except UnicodeDecodeError as exc:
        raise BodyParseError(ENTITY_PARSE_FAILED, f"invalid {charset} body", 400) from exc


def decode_text(raw: bytes, charset: Optional[str]) -> str:
    """Any charset Python knows; default UTF-8. The text is kept verbatim."""
    return _decode(raw, (charset or "utf-8").lower())


def decode_json(raw: bytes, charset: Optional[str]) -> Any:
    charset = (charset or "utf-8").lower()
    if not charset.startswith("utf-"):
        raise BodyParseError(CHARSET_UNSUPPORTED, f'unsupported charset "{charset.upper()}"', 415)
    if not raw:
        return {}

    try:
        text = _decode(raw, charset)
    except BodyParseError as exc:
        if exc.type != ENCODING_UNSUPPORTED:
            raise
        raise BodyParseError(
            CHARSET_UNSUPPORTED, f'unsupported charset "{charset.upper()}"', 415
        ) from exc

    # Strict mode: only objects and arrays at the top level
    first = text.lstrip(" \t\n\r")[:1]
    if first not in ("{", "["):
        raise BodyParseError(ENTITY_PARSE_FAILED, f"Unexpected token {first!r} in JSON", 400)
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError as exc:
        raise BodyParseError(ENTITY_PARSE_FAILED, str(exc), 400) from exc


def _reject_constant(token: str) -> Any:
    # NaN and Infinity are accepted by the json module but are not JSON
    raise ValueError(f"Unexpected token {token} in JSON")


def decode_form(raw: bytes, charset: Optional[str], parameter_limit: int) -> Dict[str, Any]:
    """
    Flat urlencoded decoding. Repeated keys collect into a list.

    Example:
        b"a=1&a=2&b=" → {"a": ["1", "2"], "b": ""}
    """
    charset = (charset or "utf-8").lower()
    if charset != "utf-8":
        raise BodyParseError(CHARSET_UNSUPPORTED, f'unsupported charset "{charset.upper()}"', 415)

    text = _decode(raw, charset)
    if not text:
        return {}
    if text.count("&") + 1 > parameter_limit:
        raise BodyParseError(PARAMETERS_TOO_MANY, "too many parameters", 413)

    form: Dict[str, Any] = {}
    for key, value in parse_qsl(text, keep_blank_values=True):
        if key not in form:
            form[key] = value
        elif isinstance(form[key], list):
            form[key].append(value)
        else:
            form[key] = [form[key], value]
    return form


@dataclass(frozen=True)
class Decoder:
    name: str
    limit: int
    decode: Callable[[bytes, Optional[str]], Any]


# ══════════════════════════════════════════════════════════════════════════
# Middleware
# ══════════════════════════════════════════════════════════════════════════

class BodyDecoderMiddleware:
    """
    Decodes request bodies into `request.state.parsed_body`.

    Args:
        text_routes:      Path prefixes whose JSON bodies stay raw text
        text_limit:       Ceiling for the text decoder (bytes)
        body_limit:       Ceiling for the JSON and form decoders (bytes)
        parameter_limit:  Maximum form fields
        verify:           Optional hook called with (scope, raw body) before
                          decoding; raising rejects the body
    """

    def __init__(
        self,
        app: ASGIApp,
        text_routes: Sequence[str] = (),
        text_limit: int = 102_400,
        body_limit: int = 10_485_760,
        parameter_limit: int = 1000,
        verify: Optional[BodyVerifier] = None,
    ):
        self.app = app
        self.text_routes = tuple(text_routes)
        self.verify = verify
        self.text_decoder = Decoder("text", text_limit, decode_text)
        self.json_decoder = Decoder("json", body_limit, decode_json)
        self.form_decoder = Decoder(
            "form", body_limit, lambda raw, charset: decode_form(raw, charset, parameter_limit)
        )

    def select_decoder(self, path: str, media_type: str) -> Optional[Decoder]:
        if media_type == JSON_MEDIA_TYPE:
            if any(matches_prefix(path, prefix) for prefix in self.text_routes):
                return self.text_decoder
            return self.json_decoder
        if media_type == FORM_MEDIA_TYPE:
            return self.form_decoder
        return None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state.setdefault(PARSED_BODY_STATE_KEY, {})

        headers = Headers(scope=scope)
        if not has_body(headers):
            await self.app(scope, receive, send)
            return

        media_type, params = parse_content_type(headers.get("content-type", ""))
        decoder = self.select_decoder(scope["path"], media_type)
        if decoder is None:
            await self.app(scope, receive, send)
            return

        raw = await read_body(receive, headers, decoder.limit)

        if self.verify is not None:
            try:
                self.verify(scope, raw)
            except BodyParseError:
                raise
            except Exception as exc:
                raise BodyParseError(ENTITY_VERIFY_FAILED, str(exc) or "entity verification failed", 403) from exc

        state[PARSED_BODY_STATE_KEY] = decoder.decode(raw, params.get("charset"))
        logger.debug("Decoded %s body (%d bytes) for %s", decoder.name, len(raw), scope["path"])

        if "content-encoding" in headers:
            # The application receives the inflated bytes
            scope["headers"] = [
                (name, value)
                for name, value in scope["headers"]
                if name.lower() not in (b"content-encoding", b"content-length")
            ] + [(b"content-length", str(len(raw)).encode("latin-1"))]

        await self.app(scope, replay_receive(raw, receive), send)


def replay_receive(body: bytes, receive: Receive) -> Receive:
    """A receive channel that yields `body` once, then defers to `receive`."""
    replayed = False

    async def wrapped() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped
