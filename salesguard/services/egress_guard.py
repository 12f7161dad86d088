"""
Egress guard for outbound third-party calls.

Every outbound request goes through validate_external_request: the URL must
parse, must not point at a private/loopback/link-local address, must match
the approved API whitelist, and must satisfy that entry's TLS and method
rules. secure_fetch additionally resolves the hostname right before
connecting, re-checks every resolved address, and pins the connection to
those addresses so a DNS answer that changes between check and connect
(DNS rebinding) cannot redirect the call to an internal host.
"""

import asyncio
import ipaddress
import json as jsonlib
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union
from urllib.parse import urlsplit

import aiohttp
from aiohttp.abc import AbstractResolver

from salesguard.config import settings
from salesguard.errors import EgressBlocked, UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ALLOWED_SCHEMES = frozenset({'http', 'https'})
LOCAL_HOSTNAMES = frozenset({'localhost', 'localhost.localdomain', 'ip6-localhost', 'ip6-loopback'})

# Dotted, decimal, octal and hex IPv4 spellings accepted by inet_aton
_LEGACY_IPV4 = re.compile(r'^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$', re.IGNORECASE)


@dataclass(frozen=True)
class WhitelistEntry:
    """An approved external API"""
    domain: str
    requires_tls: bool = True
    allowed_methods: FrozenSet[str] = field(default_factory=frozenset)
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WhitelistEntry':
        return cls(
            domain=str(data['domain']).lower().rstrip('.'),
            requires_tls=bool(data.get('requires_tls', True)),
            allowed_methods=frozenset(m.upper() for m in data.get('allowed_methods') or ()),
            description=data.get('description', ''),
        )

    def matches(self, hostname: str) -> bool:
        """Exact host or any subdomain of it"""
        return hostname == self.domain or hostname.endswith(f".{self.domain}")


@dataclass(frozen=True)
class EgressDecision:
    """Outcome of validating an outbound request"""
    allowed: bool
    reason: Optional[str] = None
    hostname: Optional[str] = None


@dataclass(frozen=True)
class UpstreamResponse:
    """Fully read response from an upstream API"""
    status: int
    headers: Dict[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        try:
            return jsonlib.loads(self.body) if self.body else None
        except ValueError as e:
            raise UpstreamError("Upstream returned invalid JSON", upstream_status=self.status) from e

    def raise_for_status(self):
        if not self.ok:
            raise UpstreamError(f"Upstream returned status {self.status}", upstream_status=self.status)


def is_private_address(ip_obj: IPAddress) -> bool:
    """True for addresses an outbound call must never reach"""
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        return is_private_address(ip_obj.ipv4_mapped)
    return (
        ip_obj.is_private
        or ip_obj.is_loopback
        or ip_obj.is_link_local
        or ip_obj.is_unspecified
        or ip_obj.is_multicast
        or ip_obj.is_reserved
    )


def parse_ip_literal(hostname: str) -> Optional[IPAddress]:
    """Interpret hostname as an IP address if it is one, including legacy IPv4 forms"""
    host = hostname.strip('[]').split('%', 1)[0]
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if _LEGACY_IPV4.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def is_private_host(hostname: str) -> bool:
    """True if the hostname names a private, loopback or link-local destination"""
    host = hostname.lower().rstrip('.')
    if host in LOCAL_HOSTNAMES or host.endswith('.localhost'):
        return True
    ip_obj = parse_ip_literal(host)
    return ip_obj is not None and is_private_address(ip_obj)


class PinnedResolver(AbstractResolver):
    """aiohttp resolver that only answers with addresses checked beforehand"""

    def __init__(self, addresses: Dict[str, List[Dict[str, Any]]]):
        self._addresses = addresses

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET) -> List[Dict[str, Any]]:
        pinned = self._addresses.get(host.lower().rstrip('.'))
        if not pinned:
            raise OSError(f"No vetted address for host {host}")
        return [dict(entry, port=port) for entry in pinned]

    async def close(self) -> None:
        pass


class EgressGuard:
    """Validates and performs outbound calls to approved third-party APIs"""

    def __init__(self,
                 whitelist: Optional[Iterable[WhitelistEntry]] = None,
                 monitor=None,
                 default_timeout_ms: Optional[int] = None,
                 signer=None):
        if whitelist is None:
            whitelist = [WhitelistEntry.from_dict(entry) for entry in settings.get_egress_whitelist()]
        self.whitelist: tuple = tuple(whitelist)
        self.default_timeout_ms = default_timeout_ms or settings.egress_timeout_ms
        self._monitor = monitor
        self._signer = signer

    def find_entry(self, hostname: str) -> Optional[WhitelistEntry]:
        host = hostname.lower().rstrip('.')
        for entry in self.whitelist:
            if entry.matches(host):
                return entry
        return None

    def validate_external_request(self, url: str, method: str = 'GET') -> EgressDecision:
        """Check an outbound URL and method against the egress policy"""
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
            parts.port  # raises ValueError on a malformed port
        except (ValueError, TypeError, AttributeError):
            return EgressDecision(False, 'Invalid URL format')

        if not hostname:
            return EgressDecision(False, 'Invalid URL format')

        hostname = hostname.lower().rstrip('.')
        scheme = (parts.scheme or '').lower()
        if scheme not in ALLOWED_SCHEMES:
            return EgressDecision(False, f"Protocol '{scheme}' not allowed", hostname)

        # Private ranges are rejected before the whitelist is consulted
        if is_private_host(hostname):
            return EgressDecision(False, 'Requests to private IPs are blocked', hostname)

        entry = self.find_entry(hostname)
        if entry is None:
            return EgressDecision(False, 'Domain not in approved API whitelist', hostname)

        if entry.requires_tls and scheme != 'https':
            return EgressDecision(False, 'HTTPS required for this API', hostname)

        verb = (method or 'GET').upper()
        if entry.allowed_methods and verb not in entry.allowed_methods:
            return EgressDecision(False, f"Method {verb} not allowed for this API", hostname)

        return EgressDecision(True, hostname=hostname)

    async def secure_fetch(self,
                           url: str,
                           method: str = 'GET',
                           *,
                           headers: Optional[Dict[str, str]] = None,
                           json: Any = None,
                           data: Any = None,
                           params: Optional[Dict[str, str]] = None,
                           timeout_ms: Optional[int] = None,
                           identity: Optional[str] = None,
                           sign_request: bool = False) -> UpstreamResponse:
        """
        Validate and perform an outbound call under a hard deadline.

        Redirects are not followed. Raises EgressBlocked, UpstreamTimeout or
        UpstreamError; never retries.
        """
        verb = (method or 'GET').upper()
        decision = self.validate_external_request(url, verb)
        if not decision.allowed:
            await self._block(decision, verb, identity)
            raise EgressBlocked(decision.reason, hostname=decision.hostname)

        request_headers = dict(headers or {})
        if sign_request and json is not None:
            request_headers.update(self._get_signer().signed_headers(json))

        deadline_ms = timeout_ms or self.default_timeout_ms
        try:
            return await asyncio.wait_for(
                self._fetch_vetted(decision, url, verb, request_headers, json, data, params, identity),
                timeout=deadline_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(f"External request to {decision.hostname} timed out after {deadline_ms}ms")
            raise UpstreamTimeout(f"Request timeout after {deadline_ms}ms")
        except aiohttp.ClientError as e:
            logger.warning(f"External request to {decision.hostname} failed: {type(e).__name__}")
            raise UpstreamError(f"Request to {decision.hostname} failed") from e

    async def _fetch_vetted(self, decision: EgressDecision, url: str, method: str,
                            headers: Dict[str, str], json: Any, data: Any,
                            params: Optional[Dict[str, str]], identity: Optional[str]) -> UpstreamResponse:
        port = urlsplit(url).port or (443 if url.lower().startswith('https') else 80)
        addresses = await self._resolve_and_check(decision.hostname, port)
        if addresses is None:
            rebound = EgressDecision(False, 'Hostname resolves to a private IP', decision.hostname)
            await self._block(rebound, method, identity)
            raise EgressBlocked(rebound.reason, hostname=decision.hostname)
        return await self._send(method, url, decision.hostname, addresses, headers, json, data, params)

    async def _resolve_and_check(self, hostname: str, port: int) -> Optional[List[Dict[str, Any]]]:
        """Resolve hostname; None if any resolved address is private"""
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise UpstreamError(f"Could not resolve {hostname}") from e

        addresses: List[Dict[str, Any]] = []
        for family, _type, proto, _canonname, sockaddr in infos:
            ip_str = sockaddr[0]
            if is_private_address(ipaddress.ip_address(ip_str.split('%', 1)[0])):
                logger.warning(f"Host {hostname} resolved to a blocked address")
                return None
            addresses.append({
                'hostname': hostname,
                'host': ip_str,
                'port': port,
                'family': family,
                'proto': proto,
                'flags': socket.AI_NUMERICHOST,
            })

        if not addresses:
            raise UpstreamError(f"Could not resolve {hostname}")
        return addresses

    async def _send(self, method: str, url: str, hostname: str, addresses: List[Dict[str, Any]],
                    headers: Dict[str, str], json: Any, data: Any,
                    params: Optional[Dict[str, str]]) -> UpstreamResponse:
        connector = aiohttp.TCPConnector(resolver=PinnedResolver({hostname: addresses}), use_dns_cache=False)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.request(method, url, headers=headers, json=json, data=data,
                                       params=params, allow_redirects=False) as response:
                body = await response.read()
                return UpstreamResponse(
                    status=response.status,
                    headers={k: v for k, v in response.headers.items()},
                    body=body,
                )

    async def _block(self, decision: EgressDecision, method: str, identity: Optional[str]):
        """Record a blocked attempt; only the hostname is ever logged"""
        logger.warning(f"Blocked external request to {decision.hostname or '<unparseable>'}: {decision.reason}")
        monitor = await self._get_monitor()
        from salesguard.services.security_monitor import SecurityEventType, SecuritySeverity
        await monitor.log_event(
            SecurityEventType.BLOCKED_REQUEST,
            SecuritySeverity.MEDIUM,
            description=f"Blocked external request: {decision.reason}",
            identity=identity,
            metadata={'hostname': decision.hostname, 'method': method, 'reason': decision.reason},
        )

    async def _get_monitor(self):
        if self._monitor is None:
            from salesguard.services.security_monitor import get_security_monitor
            self._monitor = await get_security_monitor()
        return self._monitor

    def _get_signer(self):
        if self._signer is None:
            from salesguard.services.request_signer import get_request_signer
            self._signer = get_request_signer()
        return self._signer


# Global egress guard instance
_egress_guard: Optional[EgressGuard] = None


def get_egress_guard() -> EgressGuard:
    """Get or create the global egress guard"""
    global _egress_guard
    if _egress_guard is None:
        _egress_guard = EgressGuard()
    return _egress_guard


async def initialize_egress_guard():
    """Load the whitelist once at startup"""
    guard = get_egress_guard()
    logger.info(f"Egress guard initialized with {len(guard.whitelist)} approved APIs")


async def shutdown_egress_guard():
    """Shutdown the egress guard"""
    global _egress_guard
    _egress_guard = None
