"""
AI research routes.

Company research and meeting-attendee analysis. Both routes are rate
limited with the AI_ANALYSIS preset, accept optionally signed requests,
validate their input, and verify the AI gateway's structured output before
returning it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from sanic import Blueprint, Request, HTTPResponse
from sanic.response import json as sanic_json

from salesguard.errors import UpstreamError, UpstreamTimeout
from salesguard.middleware.security import rate_limited
from salesguard.services.ai_gateway import AIGatewayClient, get_ai_gateway
from salesguard.services.request_signer import require_signed_request
from salesguard.services.response_validator import (
    AttendeeInput, CompanyResearchRequest, MAX_BATCH_ITEMS,
    validate_batch_body, validate_body, validate_endpoint_response,
)

logger = logging.getLogger(__name__)

research_bp = Blueprint("research", url_prefix="/v1")

# Concurrent AI gateway calls per attendee batch
ATTENDEE_CONCURRENCY = 5


@research_bp.post("/research-company", name="research_company")
@validate_body(CompanyResearchRequest)
@rate_limited('AI_ANALYSIS')
@require_signed_request
async def research_company(request: Request) -> HTTPResponse:
    """
    Research a company.

    Request Body (application/json):
    - companyName: string, 1-200 characters
    - companyDomain: string, a bare domain name

    Responses:
    - 200: company profile, financials, news, pain points and strategic insights
    - 400: invalid body; 401: bad signature; 429: rate limited
    - 502/504: AI gateway failure or timeout
    """
    body: CompanyResearchRequest = request.ctx.validated

    raw = await get_ai_gateway().research_company(
        body.company_name, body.company_domain, identity=request.ctx.identity
    )

    research = validate_endpoint_response('company_research', raw)
    if not research.ok:
        logger.warning(f"Discarded company research payload: {research.field}: {research.message}")
        raise UpstreamError("AI gateway returned an invalid company research payload")

    logger.info(f"Company research complete: {body.company_domain}")

    return sanic_json({
        'companyName': body.company_name,
        'companyDomain': body.company_domain,
        **research.value.to_dict(),
        'researchedAt': datetime.now(timezone.utc).isoformat(),
    })


async def _analyze_attendee(gateway: AIGatewayClient, attendee: AttendeeInput,
                            identity: str, semaphore: asyncio.Semaphore) -> Dict[str, Any]:
    email_domain = attendee.email.split('@')[-1]
    summary = {'name': attendee.name, 'email': attendee.email, 'emailDomain': email_domain}

    async with semaphore:
        try:
            raw = await gateway.analyze_attendee(attendee.name, attendee.email, identity=identity)
        except UpstreamTimeout:
            logger.warning(f"Attendee analysis timed out for attendee at {email_domain}")
            return {**summary, 'error': 'Failed to analyze attendee'}
        except UpstreamError as e:
            # Gateway-level failures fail the whole batch
            if e.upstream_status is not None:
                raise
            logger.warning(f"No usable analysis for attendee at {email_domain}")
            return {**summary, 'error': 'Failed to analyze attendee'}

    analysis = validate_endpoint_response('attendee_analysis', raw)
    if not analysis.ok:
        logger.warning(f"Discarded attendee analysis: {analysis.field}: {analysis.message}")
        return {**summary, 'error': 'Failed to analyze attendee'}

    return {**summary, **analysis.value.to_dict()}


async def analyze_batch(gateway: AIGatewayClient, attendees: List[AttendeeInput],
                        identity: str) -> List[Dict[str, Any]]:
    """
    Analyze attendees concurrently, preserving input order.

    If one analysis raises, the others are cancelled and awaited before the
    error propagates, so no outbound call outlives the request.
    """
    semaphore = asyncio.Semaphore(ATTENDEE_CONCURRENCY)
    tasks = [
        asyncio.ensure_future(_analyze_attendee(gateway, attendee, identity, semaphore))
        for attendee in attendees
    ]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@research_bp.post("/analyze-attendees", name="analyze_attendees")
@validate_batch_body(AttendeeInput, 'attendees', max_items=MAX_BATCH_ITEMS)
@rate_limited('AI_ANALYSIS')
@require_signed_request
async def analyze_attendees(request: Request) -> HTTPResponse:
    """
    Analyze meeting attendees.

    Request Body (application/json):
    - attendees: list of `{ "name": string, "email": string }`, at most 100

    Responses:
    - 200: `{ "attendees": [...] }`, one entry per attendee; entries that
      could not be analyzed or timed out carry an `error` field
    - 400: invalid body (reports the failing item index)
    - 502: AI gateway quota or server failure
    """
    results = await analyze_batch(get_ai_gateway(), request.ctx.validated, request.ctx.identity)
    return sanic_json({'attendees': results})
