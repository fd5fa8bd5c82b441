"""
Courier Backend — Content-Type Override Middleware
====================================================

What:  Rewrites the Content-Type of notifications delivered by Amazon SNS
       to application/json.
Why:   SNS labels its JSON documents `text/plain; charset=UTF-8`; without the
       rewrite the JSON decoder skips them.
How:   Pure ASGI middleware mutating `scope["headers"]` before any body is
       read. The body bytes are not touched.
When:  Outermost stage: must run before BodyDecoderMiddleware.
"""

from typing import Iterable, List, Tuple

from starlette.types import ASGIApp, Receive, Scope, Send

SNS_MESSAGE_TYPE_HEADER = b"x-amz-sns-message-type"
JSON_CONTENT_TYPE = b"application/json"


def override_content_type(
    headers: Iterable[Tuple[bytes, bytes]],
    sentinel: bytes = SNS_MESSAGE_TYPE_HEADER,
    content_type: bytes = JSON_CONTENT_TYPE,
) -> List[Tuple[bytes, bytes]]:
    """
    Return `headers` with Content-Type forced when the sentinel header is set.

    Header names in an ASGI scope are lowercase; any existing Content-Type
    entries are dropped and a single one is appended.
    """
    raw = list(headers)
    if not any(name.lower() == sentinel and value for name, value in raw):
        return raw
    rewritten = [(name, value) for name, value in raw if name.lower() != b"content-type"]
    rewritten.append((b"content-type", content_type))
    return rewritten


class ContentTypeOverrideMiddleware:
    """
    Forces JSON Content-Type on requests from the notification upstream.

    No-op for every request that does not carry the sentinel header.
    """

    def __init__(self, app: ASGIApp, sentinel_header: str = "x-amz-sns-message-type"):
        self.app = app
        self.sentinel = sentinel_header.lower().encode("latin-1")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            scope["headers"] = override_content_type(scope.get("headers", []), self.sentinel)
        await self.app(scope, receive, send)
