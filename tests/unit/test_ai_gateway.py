"""
Unit tests for the AI gateway client.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from salesguard.errors import UpstreamError
from salesguard.services.ai_gateway import AIGatewayClient, ATTENDEE_TOOL
from salesguard.services.egress_guard import UpstreamResponse


def _completion(arguments) -> bytes:
    return json.dumps({"choices": [{"message": {"tool_calls": [
        {"function": {"name": "attendee_intelligence", "arguments": arguments}}
    ]}}]}).encode()


@pytest.fixture
def guard():
    fake = MagicMock()
    fake.secure_fetch = AsyncMock()
    return fake


@pytest.fixture
def client(guard) -> AIGatewayClient:
    return AIGatewayClient(guard=guard, url="https://ai.gateway.lovable.dev/v1/chat/completions",
                           api_key="key", model="test-model")


class TestAIGatewayClient:
    """Test tool-call requests and response parsing."""

    async def test_analyze_attendee(self, client, guard, attendee_payload):
        guard.secure_fetch.return_value = UpstreamResponse(200, {}, _completion(json.dumps(attendee_payload)))

        result = await client.analyze_attendee("Jane Doe", "jane@acme.com", identity="user:a")

        assert result == attendee_payload
        args, kwargs = guard.secure_fetch.call_args
        assert args[1] == "POST"
        assert kwargs["identity"] == "user:a"
        assert kwargs["headers"]["Authorization"] == "Bearer key"
        body = kwargs["json"]
        assert body["model"] == "test-model"
        assert body["tool_choice"]["function"]["name"] == ATTENDEE_TOOL["name"]
        assert "Likely Company: acme" in body["messages"][1]["content"]

    async def test_research_company(self, client, guard, company_research_payload):
        guard.secure_fetch.return_value = UpstreamResponse(200, {}, _completion(json.dumps(company_research_payload)))

        result = await client.research_company("Acme", "acme.com")

        assert result["profile"]["industry"] == "Software"

    @pytest.mark.parametrize("status", [429, 402])
    async def test_quota_statuses(self, client, guard, status):
        guard.secure_fetch.return_value = UpstreamResponse(status, {}, b"")

        with pytest.raises(UpstreamError) as exc_info:
            await client.analyze_attendee("Jane Doe", "jane@acme.com")

        assert exc_info.value.upstream_status == status

    async def test_server_error(self, client, guard):
        guard.secure_fetch.return_value = UpstreamResponse(500, {}, b"oops")

        with pytest.raises(UpstreamError) as exc_info:
            await client.analyze_attendee("Jane Doe", "jane@acme.com")

        assert exc_info.value.upstream_status == 500

    @pytest.mark.parametrize("body", [
        b'{"choices": []}',
        _completion("not json"),
        _completion("[1, 2]"),
    ])
    async def test_unusable_completion(self, client, guard, body):
        guard.secure_fetch.return_value = UpstreamResponse(200, {}, body)

        with pytest.raises(UpstreamError) as exc_info:
            await client.analyze_attendee("Jane Doe", "jane@acme.com")

        assert exc_info.value.upstream_status is None

    async def test_missing_api_key(self, guard):
        client = AIGatewayClient(guard=guard, api_key="")

        with pytest.raises(UpstreamError):
            await client.analyze_attendee("Jane Doe", "jane@acme.com")

        guard.secure_fetch.assert_not_awaited()
