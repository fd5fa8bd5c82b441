"""
Courier Backend — Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── test_settings: Settings with small body limits and a test origin
    ├── span_exporter: In-memory OpenTelemetry exporter
    ├── telemetry: Started Telemetry exporting to span_exporter
    ├── app: Application built with the test business router
    └── test_client: HTTPX AsyncClient talking to `app`

The test business router (mounted under /v1/test) stands in for the real
business application: it echoes bodies, validates a schema, raises a
domain error and crashes on demand.
"""

import os

# Override settings for testing BEFORE any app imports
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_FORMAT"] = "text"
os.environ["TRACE_ENDPOINT"] = ""

from typing import Any, Dict

import pytest
import pytest_asyncio
from fastapi import APIRouter, Request
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from pydantic import BaseModel

from courier.config import Settings
from courier.exceptions import ApiError
from courier.main import create_app
from courier.services.telemetry import Telemetry

TEST_ORIGIN = "https://app.courier.test"


# ══════════════════════════════════════════════════════════════════════════
# Test business router
# ══════════════════════════════════════════════════════════════════════════

business_router = APIRouter(prefix="/test")


class SendRequest(BaseModel):
    recipient: str
    subject: str


@business_router.post("/echo")
async def echo(request: Request) -> Dict[str, Any]:
    """Return what the pipeline decoded and the raw bytes replayed to the handler."""
    raw = await request.body()
    return {
        "parsed_body": request.state.parsed_body,
        "raw": raw.decode("utf-8", errors="replace"),
        "content_type": request.headers.get("content-type"),
    }


@business_router.post("/send")
async def send(payload: SendRequest) -> Dict[str, str]:
    return {"recipient": payload.recipient}


@business_router.post("/forbidden")
async def forbidden() -> None:
    raise ApiError(403, "forbidden_action", "You are not allowed to send to this list")


@business_router.get("/crash")
async def crash() -> None:
    campaign = None
    return campaign.name  # AttributeError, like dereferencing null


@business_router.get("/crash-chained")
async def crash_chained() -> None:
    try:
        {}["template"]
    except KeyError as exc:
        raise RuntimeError("template lookup failed") from exc


@business_router.get("/ok")
async def ok() -> Dict[str, str]:
    return {"status": "ok"}


# ══════════════════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════════════════

def make_settings(**overrides: Any) -> Settings:
    """Settings for tests: small limits so size edges are cheap to hit."""
    values: Dict[str, Any] = {
        "frontend_url": TEST_ORIGIN,
        "transactional_body_size_limit": 100,
        "body_size_limit_multiplier": 10,
        "text_body_size_limit": 2048,
        "form_parameter_limit": 5,
        "environment": "test",
        "service_name": "courier-test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def telemetry(span_exporter):
    """
    Started Telemetry exporting synchronously to the in-memory exporter.

    SimpleSpanProcessor exports each span as it ends, so spans are visible
    as soon as the response has been received.
    """
    service = Telemetry(
        service_name="courier-test",
        environment="test",
        span_processors=[SimpleSpanProcessor(span_exporter)],
    )
    service.start()
    yield service
    service.shutdown()


@pytest.fixture
def app(test_settings, telemetry):
    return create_app(test_settings, telemetry, routers=[business_router])


def client_for(app) -> AsyncClient:
    """HTTPX AsyncClient routed straight into the ASGI app."""
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest_asyncio.fixture
async def test_client(app):
    """
    Usage:
        async def test_health(test_client):
            response = await test_client.get("/")
            assert response.status_code == 200
    """
    async with client_for(app) as client:
        yield client
