"""
API tests for the salesguard security layer.

Covers the health endpoint, response headers, CORS preflights, rate
limiting, request signing, body validation, the AI research routes and
the security event feed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from salesguard.config import settings
from salesguard.db.sqlite import get_database
from salesguard.errors import UpstreamError, UpstreamTimeout
from salesguard.routes import research as research_routes
from salesguard.services.request_signer import get_request_signer, now_ms

COMPANY = {"companyName": "Acme", "companyDomain": "acme.com"}


@pytest.fixture
def gateway(monkeypatch, company_research_payload, attendee_payload):
    """Replace the AI gateway used by the research routes."""
    fake = MagicMock()
    fake.research_company = AsyncMock(return_value=company_research_payload)
    fake.analyze_attendee = AsyncMock(return_value=attendee_payload)
    monkeypatch.setattr(research_routes, "get_ai_gateway", lambda: fake)
    return fake


class TestHealthEndpoints:
    """Test health and documentation endpoints."""

    async def test_basic_health_check(self, client):
        """Test the basic health endpoint."""
        response = await client.get("/health")

        assert response.status == 200
        data = response.json

        assert data["status"] == "OK"
        assert data["service"] == "salesguard"
        assert data["version"] == "0.1.0"
        assert "timestamp" in data

    async def test_openapi_docs_available(self, client):
        """Test that OpenAPI documentation is available."""
        response = await client.get("/docs")

        assert response.status == 200
        assert "text/html" in response.headers.get("content-type", "")


class TestSecurityHeaders:
    """Test headers stamped on every response."""

    async def test_security_headers_present(self, client):
        response = await client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]
        assert "default-src 'self'" in response.headers["Content-Security-Policy"]
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert "X-Request-ID" in response.headers

    async def test_error_responses_carry_security_headers(self, client):
        response = await client.post("/v1/research-company", json={})

        assert response.status == 400
        assert response.headers["X-Frame-Options"] == "DENY"

    async def test_cors_preflight(self, client):
        """Preflights are answered before rate limiting or validation."""
        response = await client.options("/v1/research-company")

        assert response.status == 204
        assert "POST" in response.headers["Access-Control-Allow-Methods"]
        assert "x-request-signature" in response.headers["Access-Control-Allow-Headers"]
        assert "x-ratelimit-remaining" in response.headers["Access-Control-Expose-Headers"]


class TestAccessLog:
    """Test that every request reaches the API access log."""

    async def test_each_request_is_recorded(self, client, token_factory):
        headers = {"Authorization": f"Bearer {token_factory('alice@example.com')}"}
        report = {"identity": "rep@example.com", "success": True}

        for _ in range(3):
            response = await client.post("/v1/auth/attempts", json=report, headers=headers)
            assert response.status == 200
            assert "X-Request-ID" in response.headers
            assert response.headers["X-Frame-Options"] == "DENY"

        db = await get_database()
        since = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert await db.count_api_access("user:alice@example.com", "/v1/auth/attempts", since) == 3

    async def test_unusual_activity_flagged_from_access_log(self, client, token_factory, auth_headers, monkeypatch):
        monkeypatch.setattr(settings, "unusual_activity_threshold", 2)
        headers = {"Authorization": f"Bearer {token_factory('alice@example.com')}"}
        report = {"identity": "rep@example.com", "success": True}

        for _ in range(4):
            await client.post("/v1/auth/attempts", json=report, headers=headers)

        response = await client.get("/v1/security/events", headers=auth_headers)
        flagged = [e for e in response.json["events"] if e["event_type"] == "suspicious_api_usage"]
        assert flagged
        assert flagged[0]["identity"] == "user:alice@example.com"


class TestRateLimiting:
    """Test per-identity rate limits on the HTTP surface."""

    async def test_budget_exhaustion_returns_429(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_ai_analysis_max", 2)

        first = await client.post("/v1/research-company", json=COMPANY)
        second = await client.post("/v1/research-company", json=COMPANY)
        third = await client.post("/v1/research-company", json=COMPANY)

        assert first.status == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        assert third.status == 429
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert 0 < int(third.headers["Retry-After"]) <= 60
        data = third.json
        assert data["retryable"] is True
        assert data["retry_after"] == int(third.headers["Retry-After"])
        assert gateway.research_company.await_count == 2

    async def test_identities_have_separate_budgets(self, client, gateway, token_factory, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_ai_analysis_max", 1)
        alice = {"Authorization": f"Bearer {token_factory('alice@example.com')}"}
        bob = {"Authorization": f"Bearer {token_factory('bob@example.com')}"}

        assert (await client.post("/v1/research-company", json=COMPANY, headers=alice)).status == 200
        assert (await client.post("/v1/research-company", json=COMPANY, headers=alice)).status == 429
        assert (await client.post("/v1/research-company", json=COMPANY, headers=bob)).status == 200

    async def test_rate_limit_event_logged(self, client, gateway, auth_headers, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_ai_analysis_max", 1)

        await client.post("/v1/research-company", json=COMPANY)
        await client.post("/v1/research-company", json=COMPANY)

        response = await client.get("/v1/security/events", headers=auth_headers)
        types = [event["event_type"] for event in response.json["events"]]
        assert "rate_limit_exceeded" in types


class TestRequestSigning:
    """Test signature verification on signed routes."""

    async def test_valid_signature_accepted(self, client, gateway):
        headers = get_request_signer().signed_headers(COMPANY)

        response = await client.post("/v1/research-company", json=COMPANY, headers=headers)

        assert response.status == 200

    async def test_bad_signature_rejected_generically(self, client, gateway):
        headers = {
            "X-Request-Timestamp": str(now_ms()),
            "X-Request-Signature": "0" * 64,
        }

        response = await client.post("/v1/research-company", json=COMPANY, headers=headers)

        assert response.status == 401
        assert response.json["error"] == "Invalid request"
        gateway.research_company.assert_not_awaited()

    async def test_stale_timestamp_rejected_with_same_message(self, client, gateway):
        stale = now_ms() - 10 * 60 * 1000
        headers = get_request_signer().signed_headers(COMPANY, timestamp=stale)

        response = await client.post("/v1/research-company", json=COMPANY, headers=headers)

        assert response.status == 401
        assert response.json["error"] == "Invalid request"

    async def test_tampered_body_rejected(self, client, gateway):
        headers = get_request_signer().signed_headers(COMPANY)
        tampered = dict(COMPANY, companyDomain="evil.com")

        response = await client.post("/v1/research-company", json=tampered, headers=headers)

        assert response.status == 401

    async def test_unsigned_rejected_when_required(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "request_signing_required", True)

        response = await client.post("/v1/research-company", json=COMPANY)

        assert response.status == 401
        assert response.json["error"] == "Invalid request"


class TestCompanyResearch:
    """Test the company research route."""

    async def test_research_company(self, client, gateway):
        response = await client.post("/v1/research-company", json={
            "companyName": "  Acme <Corp>  ",
            "companyDomain": "ACME.com",
        })

        assert response.status == 200
        data = response.json
        assert data["companyName"] == "Acme Corp"
        assert data["companyDomain"] == "acme.com"
        assert data["profile"]["industry"] == "Software"
        assert data["confidence"] == "medium"
        assert "researchedAt" in data
        gateway.research_company.assert_awaited_once()

    async def test_invalid_domain_returns_field(self, client, gateway):
        response = await client.post("/v1/research-company", json={
            "companyName": "Acme",
            "companyDomain": "bad_domain.com",
        })

        assert response.status == 400
        data = response.json
        assert data["field"] == "companyDomain"
        assert data["error"] == "Invalid domain format"
        assert data["retryable"] is False
        gateway.research_company.assert_not_awaited()

    async def test_malformed_ai_payload_is_discarded(self, client, gateway):
        gateway.research_company.return_value = {"confidence": "sure", "profile": "n/a"}

        response = await client.post("/v1/research-company", json=COMPANY)

        assert response.status == 502
        assert response.json["error"] == "Upstream service temporarily unavailable"
        assert response.json["retryable"] is True

    async def test_gateway_errors_do_not_leak_details(self, client, gateway):
        gateway.research_company.side_effect = UpstreamError("connect to 10.1.2.3:443 refused")

        response = await client.post("/v1/research-company", json=COMPANY)

        assert response.status == 502
        assert "10.1.2.3" not in response.text

    async def test_unexpected_errors_are_generic(self, client, gateway):
        gateway.research_company.side_effect = KeyError("internal secret")

        response = await client.post("/v1/research-company", json=COMPANY)

        assert response.status == 500
        assert response.json["error"] == "An error occurred"
        assert "internal secret" not in response.text


class TestAttendeeAnalysis:
    """Test the attendee analysis route."""

    async def test_analyze_attendees(self, client, gateway, attendee_payload):
        gateway.analyze_attendee.side_effect = [
            attendee_payload,
            UpstreamError("AI gateway returned no attendee_intelligence result"),
            {"jobTitle": "x"},
        ]

        response = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
            {"name": "John Roe", "email": "john@acme.com"},
            {"name": "Ann Poe", "email": "ann@acme.com"},
        ]})

        assert response.status == 200
        attendees = response.json["attendees"]
        assert len(attendees) == 3
        assert attendees[0]["jobTitle"] == "VP Sales"
        assert attendees[0]["emailDomain"] == "acme.com"
        assert attendees[1]["error"] == "Failed to analyze attendee"
        assert attendees[2]["error"] == "Failed to analyze attendee"

    async def test_gateway_quota_fails_whole_batch(self, client, gateway):
        gateway.analyze_attendee.side_effect = UpstreamError("AI gateway rate limit exceeded", upstream_status=429)

        response = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
        ]})

        assert response.status == 502
        assert response.json["retryable"] is True

    async def test_timed_out_attendee_becomes_error_entry(self, client, gateway, attendee_payload):
        gateway.analyze_attendee.side_effect = [UpstreamTimeout("deadline exceeded"), attendee_payload]

        response = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
            {"name": "John Roe", "email": "john@acme.com"},
        ]})

        assert response.status == 200
        attendees = response.json["attendees"]
        assert attendees[0]["error"] == "Failed to analyze attendee"
        assert attendees[1]["jobTitle"] == "VP Sales"

    async def test_batch_failure_cancels_remaining_calls(self, client, gateway, attendee_payload):
        finished = []

        async def analyze(name, email, identity=None):
            if name == "Jane Doe":
                raise UpstreamError("AI gateway rate limit exceeded", upstream_status=429)
            await asyncio.sleep(0.2)
            finished.append(name)
            return attendee_payload

        gateway.analyze_attendee.side_effect = analyze

        response = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
            {"name": "Ann Poe", "email": "ann@acme.com"},
            {"name": "Bob Loe", "email": "bob@acme.com"},
        ]})
        await asyncio.sleep(0.3)

        assert response.status == 502
        assert finished == []

    async def test_invalid_body_does_not_consume_budget(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_ai_analysis_max", 1)

        invalid = await client.post("/v1/analyze-attendees", json={"attendees": "nobody"})
        valid = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
        ]})

        assert invalid.status == 400
        assert valid.status == 200
        assert valid.headers["X-RateLimit-Remaining"] == "0"

    async def test_invalid_attendee_reports_index(self, client, gateway):
        response = await client.post("/v1/analyze-attendees", json={"attendees": [
            {"name": "Jane Doe", "email": "jane@acme.com"},
            {"name": "John Roe", "email": "not-an-email"},
        ]})

        assert response.status == 400
        data = response.json
        assert data["index"] == 1
        assert data["field"] == "email"
        gateway.analyze_attendee.assert_not_awaited()

    async def test_too_many_attendees(self, client, gateway):
        attendees = [{"name": "Jane Doe", "email": "jane@acme.com"}] * 150

        response = await client.post("/v1/analyze-attendees", json={"attendees": attendees})

        assert response.status == 400
        assert response.json["error"] == "Too many items. Maximum allowed: 100"

    async def test_missing_attendees(self, client, gateway):
        response = await client.post("/v1/analyze-attendees", json={})

        assert response.status == 400
        assert response.json["field"] == "attendees"


class TestAuthAttempts:
    """Test sign-in reporting and account lockout."""

    async def test_lockout_after_repeated_failures(self, client):
        report = {"identity": "rep@example.com", "success": False, "failure_reason": "Bad password"}
        for _ in range(5):
            response = await client.post("/v1/auth/attempts", json=report)
            assert response.json["account_usable"] is True

        response = await client.post("/v1/auth/attempts", json=dict(report, success=True))

        assert response.status == 200
        assert response.json["account_usable"] is False

    async def test_invalid_report(self, client):
        response = await client.post("/v1/auth/attempts", json={"identity": ""})

        assert response.status == 400
        assert "field" in response.json


class TestSecurityEvents:
    """Test the security event feed."""

    async def test_requires_auth(self, client):
        response = await client.get("/v1/security/events")

        assert response.status == 401
        assert response.json["error"] == "Authorization header required"

    async def test_rejects_invalid_token(self, client):
        response = await client.get("/v1/security/events", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status == 401
        assert response.json["error"] == "Invalid or expired token"

    async def test_lists_events_newest_first(self, client, auth_headers):
        await client.post("/v1/auth/attempts", json={"identity": "a@example.com", "success": False})
        await client.post("/v1/auth/attempts", json={"identity": "b@example.com", "success": False})

        response = await client.get("/v1/security/events?severity=medium", headers=auth_headers)

        assert response.status == 200
        data = response.json
        assert data["count"] == 2
        assert [e["identity"] for e in data["events"]] == ["b@example.com", "a@example.com"]
        assert all(e["event_type"] == "failed_login" for e in data["events"])

    @pytest.mark.parametrize("query", ["limit=0", "limit=500", "limit=abc", "severity=extreme"])
    async def test_bad_query_parameters(self, client, auth_headers, query):
        response = await client.get(f"/v1/security/events?{query}", headers=auth_headers)

        assert response.status == 400
