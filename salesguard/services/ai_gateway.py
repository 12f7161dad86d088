"""
Client for the AI gateway's chat-completions API.

All calls go through the egress guard. Each request forces a single
function tool so the gateway answers with structured JSON arguments,
which callers then check with validate_endpoint_response.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from salesguard.config import settings
from salesguard.errors import UpstreamError
from salesguard.services.egress_guard import EgressGuard, get_egress_guard

logger = logging.getLogger(__name__)

# Gateway statuses that mean "try again later" rather than a broken request
QUOTA_STATUSES = {
    429: "AI gateway rate limit exceeded",
    402: "AI gateway credits exhausted",
}


def _string_list() -> Dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


ATTENDEE_TOOL = {
    "name": "attendee_intelligence",
    "description": "Structure attendee and company intelligence",
    "parameters": {
        "type": "object",
        "properties": {
            "jobTitle": {"type": "string"},
            "role": {"type": "string"},
            "yearsAtCompany": {"type": "string"},
            "professionalBackground": {"type": "string"},
            "recentActivities": _string_list(),
            "companyName": {"type": "string"},
            "companyIndustry": {"type": "string"},
            "linkedInUrl": {"type": "string"},
            "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
        },
        "required": ["jobTitle", "role", "companyName", "confidence"],
        "additionalProperties": False,
    },
}

COMPANY_RESEARCH_TOOL = {
    "name": "company_research",
    "description": "Structure comprehensive company research data",
    "parameters": {
        "type": "object",
        "properties": {
            "profile": {
                "type": "object",
                "properties": {
                    "size": {"type": "string"},
                    "headcount": {"type": "string"},
                    "industry": {"type": "string"},
                    "sector": {"type": "string"},
                    "founded": {"type": "string"},
                    "headquarters": {"type": "string"},
                    "products": _string_list(),
                    "businessModel": {"type": "string"},
                },
                "required": ["industry"],
            },
            "financial": {
                "type": "object",
                "properties": {
                    "revenue": {"type": "string"},
                    "fundingRounds": _string_list(),
                    "investors": _string_list(),
                    "stockSymbol": {"type": "string"},
                    "marketCap": {"type": "string"},
                    "growthIndicators": _string_list(),
                    "recentAcquisitions": _string_list(),
                    "partnerships": _string_list(),
                },
            },
            "recentNews": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "headline": {"type": "string"},
                        "date": {"type": "string"},
                        "summary": {"type": "string"},
                        "source": {"type": "string"},
                    },
                    "required": ["headline"],
                },
            },
            "painPoints": {
                "type": "object",
                "properties": {
                    "industryChallenges": _string_list(),
                    "technologyGaps": _string_list(),
                    "scalingIssues": _string_list(),
                    "competitivePressures": _string_list(),
                },
            },
            "strategicInsights": {
                "type": "object",
                "properties": {
                    "keyCompetitors": _string_list(),
                    "marketPosition": {"type": "string"},
                    "opportunities": _string_list(),
                    "risks": _string_list(),
                },
            },
            "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
            "lastUpdated": {"type": "string"},
        },
        "required": ["profile", "confidence"],
        "additionalProperties": False,
    },
}


class AIGatewayClient:
    """Calls the AI gateway with a forced function tool"""

    def __init__(self,
                 guard: Optional[EgressGuard] = None,
                 url: Optional[str] = None,
                 api_key: Optional[str] = None,
                 model: Optional[str] = None):
        self.guard = guard or get_egress_guard()
        self.url = url or settings.ai_gateway_url
        self.api_key = api_key if api_key is not None else settings.ai_gateway_api_key
        self.model = model or settings.ai_gateway_model

    async def call_tool(self,
                        tool: Dict[str, Any],
                        messages: List[Dict[str, str]],
                        identity: Optional[str] = None) -> Dict[str, Any]:
        """Run one completion and return the parsed tool-call arguments"""
        if not self.api_key:
            raise UpstreamError("AI gateway API key is not configured")

        payload = {
            "model": self.model,
            "messages": messages,
            "tools": [{"type": "function", "function": tool}],
            "tool_choice": {"type": "function", "function": {"name": tool["name"]}},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        response = await self.guard.secure_fetch(
            self.url, "POST", headers=headers, json=payload, identity=identity
        )

        if response.status in QUOTA_STATUSES:
            logger.warning(f"AI gateway refused request: {response.status}")
            raise UpstreamError(QUOTA_STATUSES[response.status], upstream_status=response.status)
        response.raise_for_status()

        return self._tool_arguments(response.json(), tool["name"])

    def _tool_arguments(self, data: Any, tool_name: str) -> Dict[str, Any]:
        try:
            tool_call = data["choices"][0]["message"]["tool_calls"][0]
            arguments = tool_call["function"]["arguments"]
        except (KeyError, IndexError, TypeError):
            raise UpstreamError(f"AI gateway returned no {tool_name} result")

        if isinstance(arguments, dict):
            return arguments
        try:
            parsed = json.loads(arguments)
        except (TypeError, ValueError):
            raise UpstreamError(f"AI gateway returned malformed {tool_name} arguments")
        if not isinstance(parsed, dict):
            raise UpstreamError(f"AI gateway returned malformed {tool_name} arguments")
        return parsed

    async def analyze_attendee(self, name: str, email: str,
                               identity: Optional[str] = None) -> Dict[str, Any]:
        email_domain = email.split('@')[-1]
        likely_company = email_domain.split('.')[0]
        messages = [
            {"role": "system", "content": (
                "You are a professional research assistant gathering business "
                "intelligence about people and companies. Be factual and concise; "
                "say clearly when information is not available."
            )},
            {"role": "user", "content": (
                f"Research the following person:\nName: {name}\nEmail: {email}\n"
                f"Company Domain: {email_domain}\nLikely Company: {likely_company}"
            )},
        ]
        return await self.call_tool(ATTENDEE_TOOL, messages, identity=identity)

    async def research_company(self, company_name: str, company_domain: str,
                               identity: Optional[str] = None) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": (
                "You are a business intelligence analyst. Using public sources, "
                "describe the company profile, financials, recent news, likely pain "
                "points and strategic position. State confidence levels."
            )},
            {"role": "user", "content": (
                f"Research this company:\nCompany Name: {company_name}\nWebsite: {company_domain}"
            )},
        ]
        return await self.call_tool(COMPANY_RESEARCH_TOOL, messages, identity=identity)


# Global client instance
_ai_gateway: Optional[AIGatewayClient] = None


def get_ai_gateway() -> AIGatewayClient:
    """Get or create the global AI gateway client"""
    global _ai_gateway
    if _ai_gateway is None:
        _ai_gateway = AIGatewayClient()
    return _ai_gateway


def reset_ai_gateway():
    global _ai_gateway
    _ai_gateway = None
