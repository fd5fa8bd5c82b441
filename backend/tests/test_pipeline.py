"""
Courier Backend — Ingress Pipeline End-to-End Tests
=====================================================

What:  Drives the full application (all middleware, exception handlers and
       routes) over HTTP with the test business router.
How:   HTTPX AsyncClient over ASGITransport; no server, no network.

What we test:
    ✅ SNS notifications are relabelled and parsed by the callback route
    ✅ Health probe: 200, empty body, no request log
    ✅ Malformed and oversized bodies → 400 malformed_request
    ✅ Domain errors are forwarded verbatim
    ✅ Unexpected faults → 500 with (or without) a tracking ID
    ✅ Schema validation → 400 invalid_request
    ✅ Routing 404/405 answered with the same envelope
    ✅ Security, cache and CORS headers on success and error responses
"""

import json
import logging
import re

import pytest

from courier.services.telemetry import Telemetry
from courier.main import create_app
from conftest import TEST_ORIGIN, business_router, client_for

MALFORMED = {"code": "malformed_request", "message": "Malformed request body"}


class TestContentTypeOverride:
    """SNS delivers JSON labelled as text/plain."""

    @pytest.mark.asyncio
    async def test_sns_notification_parsed_as_json(self, test_client):
        """Sentinel header → content-type rewritten → callback parses the text."""
        response = await test_client.post(
            "/v1/callback/email",
            content=b'{"a":1}',
            headers={
                "x-amz-sns-message-type": "Notification",
                "content-type": "text/plain; charset=UTF-8",
            },
        )
        assert response.status_code == 200
        assert response.json() == {"message": "OK"}

    @pytest.mark.asyncio
    async def test_plain_text_without_sentinel_is_not_decoded(self, test_client):
        """Without the sentinel the text/plain body is not decoded at all."""
        response = await test_client.post(
            "/v1/callback/email",
            content=b'{"a":1}',
            headers={"content-type": "text/plain"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_override_visible_to_handlers(self, test_client):
        """Business handlers see application/json and the decoded body."""
        response = await test_client.post(
            "/v1/test/echo",
            content=b'{"event":"delivered"}',
            headers={"x-amz-sns-message-type": "Notification", "content-type": "text/plain"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["content_type"] == "application/json"
        assert body["parsed_body"] == {"event": "delivered"}


class TestHealthProbe:

    @pytest.mark.asyncio
    async def test_health_returns_empty_200(self, test_client, caplog):
        """No headers at all → 200, no body, nothing in the request log."""
        with caplog.at_level(logging.INFO, logger="courier.access"):
            response = await test_client.get("/")

        assert response.status_code == 200
        assert response.content == b""
        assert [r for r in caplog.records if r.name == "courier.access"] == []

    @pytest.mark.asyncio
    async def test_health_skips_cors(self, test_client):
        response = await test_client.get("/", headers={"origin": TEST_ORIGIN})
        assert "access-control-allow-origin" not in response.headers

    @pytest.mark.asyncio
    async def test_health_still_gets_security_headers(self, test_client):
        response = await test_client.get("/")
        assert "strict-transport-security" in response.headers


class TestBodyDecoding:

    @pytest.mark.asyncio
    async def test_malformed_json(self, test_client):
        """Truncated JSON under the ceiling → exact malformed envelope."""
        response = await test_client.post(
            "/v1/test/echo",
            content=b'{"a":',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == MALFORMED

    @pytest.mark.asyncio
    async def test_malformed_body_logs_sub_code(self, test_client, caplog):
        """The technical sub-code is logged, not returned."""
        with caplog.at_level(logging.INFO, logger="courier.services.error_chain"):
            response = await test_client.post(
                "/v1/test/echo",
                content=b'{"a":',
                headers={"content-type": "application/json"},
            )

        assert "entity.parse.failed" not in response.text
        records = [r for r in caplog.records if r.getMessage() == "Malformed request"]
        assert len(records) == 1
        assert records[0].error["type"] == "entity.parse.failed"

    @pytest.mark.asyncio
    async def test_non_json_constants_rejected(self, test_client):
        response = await test_client.post(
            "/v1/test/echo",
            content=b'{"a": NaN}',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == MALFORMED

    @pytest.mark.asyncio
    async def test_body_over_ceiling_rejected(self, test_client, test_settings):
        """Above 10× the base limit → malformed envelope, 400."""
        payload = json.dumps({"body": "x" * (test_settings.body_size_ceiling + 10)})
        response = await test_client.post(
            "/v1/test/echo",
            content=payload.encode(),
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == MALFORMED

    @pytest.mark.asyncio
    async def test_body_between_base_limit_and_ceiling_accepted(self, test_client, test_settings):
        """Above the base limit but under the ceiling is left to business validation."""
        text = "x" * (test_settings.transactional_body_size_limit * 3)
        response = await test_client.post("/v1/test/echo", json={"body": text})
        assert response.status_code == 200
        assert response.json()["parsed_body"] == {"body": text}

    @pytest.mark.asyncio
    async def test_form_body_decoded(self, test_client):
        response = await test_client.post(
            "/v1/test/echo",
            content=b"to=a%40b.com&tag=x&tag=y",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 200
        assert response.json()["parsed_body"] == {"to": "a@b.com", "tag": ["x", "y"]}

    @pytest.mark.asyncio
    async def test_too_many_form_fields(self, test_client):
        response = await test_client.post(
            "/v1/test/echo",
            content=b"a=1&b=2&c=3&d=4&e=5&f=6",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 400
        assert response.json() == MALFORMED

    @pytest.mark.asyncio
    async def test_raw_body_replayed_to_handler(self, test_client):
        """The handler can still read the exact bytes the client sent."""
        response = await test_client.post(
            "/v1/test/echo",
            content=b'{ "spaced" :  true }',
            headers={"content-type": "application/json"},
        )
        assert response.json()["raw"] == '{ "spaced" :  true }'


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_domain_error_forwarded_verbatim(self, test_client):
        response = await test_client.post("/v1/test/forbidden")
        assert response.status_code == 403
        assert response.json() == {
            "code": "forbidden_action",
            "message": "You are not allowed to send to this list",
        }

    @pytest.mark.asyncio
    async def test_schema_validation_error(self, test_client):
        """Missing field → 400 invalid_request naming the field, never a 500."""
        response = await test_client.post("/v1/test/send", json={"recipient": "a@b.com"})
        assert response.status_code == 400
        body = response.json()
        assert set(body) == {"code", "message"}
        assert body["code"] == "invalid_request"
        assert "body.subject" in body["message"]

    @pytest.mark.asyncio
    async def test_unexpected_fault_carries_tracking_id(self, test_client):
        response = await test_client.get("/v1/test/crash")

        assert response.status_code == 500
        trace_id = response.headers["x-trace-id"]
        assert re.fullmatch(r"[0-9a-f]{32}", trace_id)
        assert response.json() == {
            "code": "internal_server",
            "message": (
                f"Internal Server Error. Please reach out to us with tracking ID "
                f"{trace_id} for more info."
            ),
        }

    @pytest.mark.asyncio
    async def test_unexpected_fault_without_tracing(self, test_settings):
        """No active trace → the message omits the tracking ID."""
        app = create_app(test_settings, Telemetry(enabled=False), routers=[business_router])
        async with client_for(app) as client:
            response = await client.get("/v1/test/crash")

        assert response.status_code == 500
        assert "x-trace-id" not in response.headers
        assert response.json() == {"code": "internal_server", "message": "Internal Server Error."}

    @pytest.mark.asyncio
    async def test_unexpected_fault_logged_with_cause(self, test_client, caplog):
        with caplog.at_level(logging.ERROR, logger="courier.services.error_chain"):
            response = await test_client.get("/v1/test/crash-chained")

        assert response.status_code == 500
        assert "template lookup failed" not in response.text
        records = [r for r in caplog.records if r.getMessage() == "Unexpected error occurred"]
        assert len(records) == 1
        assert records[0].exc_info is not None
        assert "KeyError" in records[0].error["parent"]

    @pytest.mark.asyncio
    async def test_fault_recorded_on_request_span(self, test_client, span_exporter):
        await test_client.get("/v1/test/crash")

        spans = span_exporter.get_finished_spans()
        server_span = next(s for s in spans if s.name == "GET /v1/test/crash")
        assert not server_span.status.is_ok
        assert any(event.name == "exception" for event in server_span.events)


class TestRoutingErrors:
    """Framework 404/405 answers use the same {code, message} envelope."""

    @pytest.mark.asyncio
    async def test_unknown_route(self, test_client, span_exporter):
        response = await test_client.get("/v1/no-such-route")
        assert response.status_code == 404
        assert response.json() == {"code": "not_found", "message": "Not Found"}

        span = next(s for s in span_exporter.get_finished_spans() if s.name == "GET /v1/no-such-route")
        assert not any(event.name == "exception" for event in span.events)

    @pytest.mark.asyncio
    async def test_wrong_method_keeps_allow_header(self, test_client):
        response = await test_client.get("/v1/test/send")
        assert response.status_code == 405
        assert response.json() == {"code": "method_not_allowed", "message": "Method Not Allowed"}
        assert response.headers["allow"] == "POST"


class TestResponseHeaders:

    @pytest.mark.asyncio
    async def test_hardening_headers_on_success(self, test_client):
        response = await test_client.get("/v1/test/ok")
        assert response.headers["strict-transport-security"] == "max-age=31622400; includeSubDomains"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["pragma"] == "no-cache"

    @pytest.mark.asyncio
    async def test_hardening_headers_on_errors(self, test_client):
        response = await test_client.post(
            "/v1/test/echo", content=b"[", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert "strict-transport-security" in response.headers
        assert response.headers["cache-control"] == "no-cache"

    @pytest.mark.asyncio
    async def test_allowed_origin_gets_credentialed_cors(self, test_client):
        response = await test_client.get("/v1/test/ok", headers={"origin": TEST_ORIGIN})
        assert response.headers["access-control-allow-origin"] == TEST_ORIGIN
        assert response.headers["access-control-allow-credentials"] == "true"

    @pytest.mark.asyncio
    async def test_other_origin_gets_no_cors(self, test_client):
        response = await test_client.get("/v1/test/ok", headers={"origin": "https://evil.test"})
        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers
        assert "access-control-allow-credentials" not in response.headers

    @pytest.mark.asyncio
    async def test_preflight_for_allowed_origin(self, test_client):
        response = await test_client.options(
            "/v1/test/send",
            headers={
                "origin": TEST_ORIGIN,
                "access-control-request-method": "POST",
                "access-control-request-headers": "content-type",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == TEST_ORIGIN
        assert "POST" in response.headers["access-control-allow-methods"]

    @pytest.mark.asyncio
    async def test_preflight_for_other_origin_ends_quietly(self, test_client):
        """Disallowed origin → empty 204 without any CORS headers, never an error body."""
        response = await test_client.options(
            "/v1/test/send",
            headers={
                "origin": "https://evil.test",
                "access-control-request-method": "POST",
            },
        )
        assert response.status_code == 204
        assert response.content == b""
        assert not [name for name in response.headers if name.startswith("access-control-")]
