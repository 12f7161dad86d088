"""
Schema validation for inbound request bodies and upstream AI responses.

Schemas are pydantic models. validate() never raises: it returns either
Valid(value) or Invalid(message, field, index), and callers at the HTTP
boundary turn an Invalid into a 400 with raise_error().
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Annotated, Any, Generic, List, Literal, Optional, Sequence, TypeVar, Union
from urllib.parse import urlsplit

from pydantic import (
    AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field,
    StringConstraints, TypeAdapter,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sanic import Request

from salesguard.errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_LENGTH = 1000
MAX_BATCH_ITEMS = 100

# Used by validate_email_domain when no allowlist is given
DEFAULT_EMAIL_DOMAINS = (
    'gmail.com',
    'outlook.com',
    'yahoo.com',
    'hotmail.com',
    'protonmail.com',
)

_ANGLE_BRACKETS = re.compile(r'[<>]')
_JS_PROTOCOL = re.compile(r'javascript:', re.IGNORECASE)
_EVENT_HANDLER = re.compile(r'on\w+=', re.IGNORECASE)
_DOMAIN = re.compile(
    r'^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$',
    re.IGNORECASE,
)


def sanitize_string(value: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Minimal markup filter for free text. Not an HTML sanitizer.

    Trims, truncates, then strips angle brackets, javascript: and inline
    event-handler patterns until nothing more matches, so removing one
    pattern can never assemble another. Applying it twice gives the same
    result as applying it once.
    """
    cleaned = value.strip()[:max_length]
    while True:
        stripped = _ANGLE_BRACKETS.sub('', cleaned)
        stripped = _JS_PROTOCOL.sub('', stripped)
        stripped = _EVENT_HANDLER.sub('', stripped)
        if stripped == cleaned:
            break
        cleaned = stripped
    return cleaned.strip()


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _sanitizer(max_length: int):
    return AfterValidator(lambda v: sanitize_string(v, max_length))


def _normalize_email(value: str) -> str:
    if len(value) > 255:
        raise ValueError('Email must be less than 255 characters')
    return value.lower()


def _check_https_url(value: str) -> str:
    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        raise ValueError('Invalid URL')
    if parts.scheme.lower() != 'https':
        raise ValueError('Only HTTPS URLs are allowed')
    return value


def _check_domain(value: str) -> str:
    if not _DOMAIN.match(value):
        raise ValueError('Invalid domain format')
    return value.lower()


Email = Annotated[EmailStr, BeforeValidator(_strip), AfterValidator(_normalize_email)]
HttpsUrl = Annotated[str, BeforeValidator(_strip), StringConstraints(max_length=2048), AfterValidator(_check_https_url)]
Domain = Annotated[str, BeforeValidator(_strip), StringConstraints(min_length=3, max_length=253), AfterValidator(_check_domain)]

PersonName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100), _sanitizer(100)]
CompanyName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200), _sanitizer(200)]

ShortText = Annotated[str, StringConstraints(max_length=500)]
LongText = Annotated[str, StringConstraints(max_length=5000)]
TextList = Annotated[List[ShortText], Field(max_length=50)]
Confidence = Literal['high', 'medium', 'low']


class SchemaModel(BaseModel):
    """Base for all schemas: camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    def to_dict(self) -> dict:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


# Inbound schemas

class AttendeeInput(SchemaModel):
    name: PersonName
    email: Email


class CompanyResearchRequest(SchemaModel):
    company_name: CompanyName
    company_domain: Domain


class CalendarEvent(SchemaModel):
    id: Annotated[str, StringConstraints(max_length=100)]
    title: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500), _sanitizer(500)]
    start_time: datetime
    end_time: datetime
    duration: Annotated[str, StringConstraints(max_length=50)]
    attendees: Annotated[List[AttendeeInput], Field(max_length=100)]
    description: Optional[Annotated[str, StringConstraints(max_length=5000), _sanitizer(5000)]] = None
    location: Optional[Annotated[str, StringConstraints(max_length=500), _sanitizer(500)]] = None
    meeting_link: Optional[HttpsUrl] = None
    timezone: Annotated[str, StringConstraints(max_length=100)]
    priority: Literal['high', 'medium', 'low', 'critical']


class EmailSender(SchemaModel):
    name: PersonName
    email: Email
    avatar: Optional[Annotated[str, StringConstraints(max_length=10)]] = None


class EmailMessage(SchemaModel):
    id: Annotated[str, StringConstraints(max_length=100)]
    sender: EmailSender
    subject: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=998), _sanitizer(998)]
    snippet: Annotated[str, StringConstraints(max_length=5000), _sanitizer(5000)]
    received_at: datetime
    priority: Literal['urgent', 'high', 'medium', 'low']
    action_items: Optional[Annotated[List[ShortText], Field(max_length=50)]] = None
    labels: Annotated[List[Annotated[str, StringConstraints(max_length=100)]], Field(max_length=20)]
    is_spam: bool
    is_promotional: bool


# Upstream AI responses, one variant per endpoint

class AttendeeAnalysisResponse(SchemaModel):
    kind: Literal['attendee_analysis'] = 'attendee_analysis'
    job_title: ShortText
    role: ShortText
    company_name: ShortText
    confidence: Confidence
    years_at_company: Optional[ShortText] = None
    professional_background: Optional[LongText] = None
    recent_activities: TextList = Field(default_factory=list)
    company_industry: Optional[ShortText] = None
    linked_in_url: Optional[ShortText] = None


class CompanyProfile(SchemaModel):
    industry: ShortText
    size: Optional[ShortText] = None
    headcount: Optional[ShortText] = None
    sector: Optional[ShortText] = None
    founded: Optional[ShortText] = None
    headquarters: Optional[ShortText] = None
    products: TextList = Field(default_factory=list)
    business_model: Optional[ShortText] = None


class FinancialIntelligence(SchemaModel):
    revenue: Optional[ShortText] = None
    funding_rounds: TextList = Field(default_factory=list)
    investors: TextList = Field(default_factory=list)
    stock_symbol: Optional[ShortText] = None
    market_cap: Optional[ShortText] = None
    growth_indicators: TextList = Field(default_factory=list)
    recent_acquisitions: TextList = Field(default_factory=list)
    partnerships: TextList = Field(default_factory=list)


class NewsItem(SchemaModel):
    headline: ShortText
    date: Optional[ShortText] = None
    summary: Optional[LongText] = None
    source: Optional[ShortText] = None


class PainPoints(SchemaModel):
    industry_challenges: TextList = Field(default_factory=list)
    technology_gaps: TextList = Field(default_factory=list)
    scaling_issues: TextList = Field(default_factory=list)
    competitive_pressures: TextList = Field(default_factory=list)


class StrategicInsights(SchemaModel):
    key_competitors: TextList = Field(default_factory=list)
    market_position: Optional[ShortText] = None
    opportunities: TextList = Field(default_factory=list)
    risks: TextList = Field(default_factory=list)


class CompanyResearchResponse(SchemaModel):
    kind: Literal['company_research'] = 'company_research'
    profile: CompanyProfile
    confidence: Confidence
    financial: Optional[FinancialIntelligence] = None
    recent_news: Annotated[List[NewsItem], Field(max_length=50)] = Field(default_factory=list)
    pain_points: Optional[PainPoints] = None
    strategic_insights: Optional[StrategicInsights] = None
    last_updated: Optional[ShortText] = None


class CompanySnapshot(SchemaModel):
    industry: ShortText
    size: ShortText
    stage: Literal['Startup', 'Growth', 'Enterprise', 'Mature']
    recent_news: Optional[LongText] = None


class FinancialHealth(SchemaModel):
    status: Literal['Healthy', 'Growing', 'Stable', 'Concerning']
    latest_funding: Optional[ShortText] = None
    revenue: Optional[ShortText] = None
    indicators: Optional[LongText] = None


class RecommendedApproach(SchemaModel):
    key_pain_points: TextList
    what_to_pitch: TextList
    value_proposition: LongText
    budget_expectation: Optional[ShortText] = None
    decision_maker_influence: Optional[Literal['High', 'Medium', 'Low']] = None


class SalesIntelligenceResponse(SchemaModel):
    kind: Literal['sales_intelligence'] = 'sales_intelligence'
    company_snapshot: CompanySnapshot
    financial_health: FinancialHealth
    recommended_approach: RecommendedApproach
    talking_points: TextList


EndpointResponse = Annotated[
    Union[AttendeeAnalysisResponse, CompanyResearchResponse, SalesIntelligenceResponse],
    Field(discriminator='kind'),
]

_endpoint_response_adapter = TypeAdapter(EndpointResponse)

RESPONSE_KINDS = ('attendee_analysis', 'company_research', 'sales_intelligence')


# Results

@dataclass(frozen=True)
class Valid(Generic[T]):
    """Successful validation carrying the typed value"""
    value: T

    ok = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Invalid:
    """First violated constraint, with the offending field and batch index"""
    message: str
    field: Optional[str] = None
    index: Optional[int] = None

    ok = False

    def unwrap(self):
        self.raise_error()

    def raise_error(self):
        raise ValidationError(self.message, field=self.field, index=self.index)

    def to_dict(self) -> dict:
        return {'message': self.message, 'field': self.field, 'index': self.index}


ValidationResult = Union[Valid[T], Invalid]


def _first_violation(error: PydanticValidationError) -> Invalid:
    first = error.errors()[0]
    message = first.get('msg', 'Invalid value')
    if message.startswith('Value error, '):
        message = message[len('Value error, '):]
    loc = [str(part) for part in first.get("loc", ())]
    return Invalid(message=message, field='.'.join(loc) or None)


def validate(data: Any, schema: Any) -> ValidationResult:
    """Validate data against a pydantic model or TypeAdapter"""
    try:
        if isinstance(schema, TypeAdapter):
            return Valid(schema.validate_python(data))
        return Valid(schema.model_validate(data))
    except PydanticValidationError as e:
        return _first_violation(e)


def validate_batch(schema: Any, items: Sequence[Any], max_items: int = MAX_BATCH_ITEMS) -> ValidationResult:
    """
    Validate every item against schema.

    Fails without looking at any item when there are more than max_items;
    otherwise stops at the first invalid item and reports its index.
    """
    if not isinstance(items, (list, tuple)):
        return Invalid('Expected a list of items')

    if len(items) > max_items:
        return Invalid(f"Too many items. Maximum allowed: {max_items}")

    validated = []
    for index, item in enumerate(items):
        result = validate(item, schema)
        if not result.ok:
            return Invalid(
                message=f"Validation error at item {index}: {result.message}",
                field=result.field,
                index=index,
            )
        validated.append(result.value)
    return Valid(validated)


def validate_endpoint_response(kind: str, data: Any) -> ValidationResult:
    """Check an upstream AI payload against the response variant for kind"""
    if kind not in RESPONSE_KINDS:
        return Invalid(f"Unknown response kind: {kind}", field='kind')
    if not isinstance(data, dict):
        return Invalid('Upstream response must be an object')
    return validate({**data, 'kind': kind}, _endpoint_response_adapter)


def validate_email_domain(email: str, allowlist: Optional[Sequence[str]] = None) -> bool:
    """True if the e-mail's domain is on the allowlist; an empty allowlist allows all"""
    allowed = DEFAULT_EMAIL_DOMAINS if allowlist is None else allowlist
    if len(allowed) == 0:
        return True
    domain = email.rsplit('@', 1)[-1].lower() if '@' in email else ''
    return any(domain == entry or domain.endswith(f".{entry}") for entry in allowed)


def validate_body(schema):
    """
    Decorator validating the JSON body against schema.

    The typed value is stored on request.ctx.validated; an invalid body
    raises ValidationError, which the exception handler turns into a 400.
    """
    def decorator(f):
        @wraps(f)
        async def decorated_function(request: Request, *args, **kwargs):
            result = validate(request.json, schema)
            if not result.ok:
                logger.debug(f"Rejected body on {request.path}: {result.field}: {result.message}")
                result.raise_error()
            request.ctx.validated = result.value
            return await f(request, *args, **kwargs)
        return decorated_function
    return decorator


def validate_batch_body(schema, field: str, max_items: int = MAX_BATCH_ITEMS):
    """
    Decorator validating body[field] as a list of schema items.

    The typed list is stored on request.ctx.validated.
    """
    def decorator(f):
        @wraps(f)
        async def decorated_function(request: Request, *args, **kwargs):
            payload = request.json
            if not isinstance(payload, dict) or field not in payload:
                raise ValidationError(f"{field} is required", field=field)
            request.ctx.validated = validate_batch(schema, payload[field], max_items=max_items).unwrap()
            return await f(request, *args, **kwargs)
        return decorated_function
    return decorator
