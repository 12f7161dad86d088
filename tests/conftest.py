"""
Pytest configuration and shared fixtures for the salesguard test suite.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

# Settings are read at import time; point them at throwaway values first
_TEST_ENV = {
    "LOG_LEVEL": "ERROR",  # Reduce noise during testing
    "AUTH_JWT_SECRET": "test-jwt-secret-key-32-characters",
    "REQUEST_SIGNING_SECRET": "test-signing-secret-32-characters",
    "SQLITE_PATH": os.path.join(tempfile.mkdtemp(prefix="salesguard-"), "security.db"),
    "AI_GATEWAY_API_KEY": "test-gateway-key",
    "CORS_ALLOW_ORIGINS": "*",
}
for _key, _value in _TEST_ENV.items():
    os.environ.setdefault(_key, _value)

import jwt
import pytest
import pytest_asyncio
from sanic import Sanic
from sanic_testing.testing import SanicASGITestClient

from salesguard.config import settings
from salesguard.db import sqlite as sqlite_module
from salesguard.db.sqlite import Database
from salesguard.services import ai_gateway as ai_gateway_module
from salesguard.services import background_tasks as background_tasks_module
from salesguard.services import egress_guard as egress_guard_module
from salesguard.services import rate_limiter as rate_limiter_module
from salesguard.services import request_signer as request_signer_module
from salesguard.services import security_monitor as security_monitor_module
from salesguard.server import create_app


@pytest.fixture(autouse=True)
def isolated_services(tmp_path, monkeypatch):
    """Give every test its own database file and fresh service singletons."""
    monkeypatch.setattr(settings, "sqlite_path", str(tmp_path / "security.db"))
    monkeypatch.setattr(sqlite_module, "_database", None)
    monkeypatch.setattr(rate_limiter_module, "_rate_limiter", None)
    monkeypatch.setattr(security_monitor_module, "_security_monitor", None)
    monkeypatch.setattr(egress_guard_module, "_egress_guard", None)
    monkeypatch.setattr(request_signer_module, "_request_signer", None)
    monkeypatch.setattr(ai_gateway_module, "_ai_gateway", None)
    monkeypatch.setattr(background_tasks_module, "_scheduler", None)
    yield


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """Provide an initialized database in a temporary directory."""
    db = Database(str(tmp_path / "monitor.db"))
    await db.initialize()
    yield db


@pytest_asyncio.fixture
async def app() -> AsyncGenerator[Sanic, None]:
    """Create a test instance of the Sanic application."""
    # Enable Sanic test mode to allow app reuse
    Sanic.test_mode = True

    try:
        test_app = create_app()
        test_app.config.TESTING = True

        yield test_app
    finally:
        # Reset Sanic registry for next test
        Sanic._app_registry.clear()
        Sanic.test_mode = False


class _ASGIClientAdapter:
    """Adapter to return only the response object from SanicASGITestClient."""
    def __init__(self, app: Sanic):
        self._client = SanicASGITestClient(app)

    async def get(self, *args, **kwargs):
        _, resp = await self._client.get(*args, **kwargs)
        return resp

    async def post(self, *args, **kwargs):
        _, resp = await self._client.post(*args, **kwargs)
        return resp

    async def options(self, *args, **kwargs):
        _, resp = await self._client.options(*args, **kwargs)
        return resp


@pytest_asyncio.fixture
async def client(app: Sanic):
    """Create an ASGI test client that does not bind sockets."""
    return _ASGIClientAdapter(app)


def make_token(subject: str, expires_in_minutes: int = 5) -> str:
    """Bearer token accepted by the identity middleware."""
    now = datetime.now(timezone.utc)
    return jwt.encode({
        "sub": subject,
        "iat": now,
        "exp": now + timedelta(minutes=expires_in_minutes),
    }, settings.auth_jwt_secret, algorithm="HS256")


@pytest.fixture
def token_factory():
    """Mint bearer tokens for arbitrary subjects."""
    return make_token


@pytest.fixture
def auth_headers() -> dict:
    """Provide authentication headers for a test user."""
    return {"Authorization": f"Bearer {make_token('rep@example.com')}"}


@pytest.fixture
def company_research_payload() -> dict:
    """Tool-call arguments the AI gateway returns for company research."""
    return {
        "profile": {
            "industry": "Software",
            "size": "Mid-market",
            "headcount": "500-1000",
            "products": ["CRM", "Analytics"],
        },
        "financial": {"revenue": "$120M", "investors": ["Example Ventures"]},
        "recentNews": [{"headline": "Acme launches new platform", "source": "Newswire"}],
        "confidence": "medium",
    }


@pytest.fixture
def attendee_payload() -> dict:
    """Tool-call arguments the AI gateway returns for one attendee."""
    return {
        "jobTitle": "VP Sales",
        "role": "Decision maker",
        "companyName": "Acme",
        "companyIndustry": "Software",
        "recentActivities": ["Spoke at SaaStr"],
        "confidence": "high",
    }
