"""
Per-identity, per-endpoint rate limiting.

Implements a fixed-window counter: each key gets a window of window_ms that
starts on its first request, and at most max_requests are allowed inside it.
Because windows are fixed rather than sliding, a caller can spend a full
budget at the end of one window and another full budget at the start of the
next, i.e. up to 2x max_requests across a window boundary. That trade-off is
accepted; do not replace this with a sliding log without revisiting callers.

Counters are charged before the handler runs and are never refunded when the
handler fails.
"""

import math
import threading
import time
import zlib
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from salesguard.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Budget enforced for one class of endpoints"""
    max_requests: int
    window_ms: int

    @classmethod
    def from_preset(cls, name: str) -> 'RateLimitConfig':
        presets = settings.get_rate_limit_presets()
        if name not in presets:
            raise KeyError(f"Unknown rate limit preset: {name}")
        return cls(**presets[name])


@dataclass
class RateLimitEntry:
    """Counter state for one identity/endpoint key"""
    count: int
    reset_at: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate limit check"""
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            'allowed': self.allowed,
            'remaining': self.remaining,
            'reset_at': self.reset_at,
            'retry_after_seconds': self.retry_after_seconds,
        }


class RateLimitStore(ABC):
    """
    Storage for rate limit counters.

    lock(key) must serialize read-modify-write cycles on the same key. A
    single-instance deployment uses process memory; a horizontally scaled one
    can implement this interface on top of a shared cache.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitEntry]:
        ...

    @abstractmethod
    def set(self, key: str, entry: RateLimitEntry) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def sweep(self, now: int) -> int:
        """Delete entries whose window ended before now; return how many"""

    @abstractmethod
    def lock(self, key: str):
        """Context manager guarding a single key"""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store sharded over independently locked dicts"""

    def __init__(self, shards: Optional[int] = None):
        shard_count = shards or settings.rate_limit_shards
        self._shards: List[Dict[str, RateLimitEntry]] = [{} for _ in range(shard_count)]
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(shard_count)]

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode('utf-8')) % len(self._shards)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks[self._index(key)]:
            yield

    def get(self, key: str) -> Optional[RateLimitEntry]:
        idx = self._index(key)
        with self._locks[idx]:
            return self._shards[idx].get(key)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        idx = self._index(key)
        with self._locks[idx]:
            self._shards[idx][key] = entry

    def delete(self, key: str) -> None:
        idx = self._index(key)
        with self._locks[idx]:
            self._shards[idx].pop(key, None)

    def sweep(self, now: int) -> int:
        removed = 0
        # One shard at a time so request-path checks on other shards never wait
        for shard, shard_lock in zip(self._shards, self._locks):
            with shard_lock:
                expired = [key for key, entry in shard.items() if entry.reset_at < now]
                for key in expired:
                    del shard[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        total = 0
        for shard, shard_lock in zip(self._shards, self._locks):
            with shard_lock:
                total += len(shard)
        return total


def rate_limit_key(identity: str, endpoint: str) -> str:
    """Key under which an identity's usage of an endpoint is counted"""
    return f"{endpoint}:{identity}"


class RateLimiter:
    """Enforces whatever {max_requests, window_ms} budget it is given"""

    def __init__(self, store: Optional[RateLimitStore] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.store = store or InMemoryRateLimitStore()
        self._clock = clock or (lambda: int(time.time() * 1000))

    def now(self) -> int:
        return self._clock()

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Charge one request against key and report whether it is allowed"""
        with self.store.lock(key):
            now = self.now()
            entry = self.store.get(key)

            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=0, reset_at=now + config.window_ms)

            if entry.count >= config.max_requests:
                self.store.set(key, entry)
                retry_after = math.ceil((entry.reset_at - now) / 1000)
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.reset_at,
                    retry_after_seconds=retry_after,
                )

            entry.count += 1
            self.store.set(key, entry)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - entry.count,
                reset_at=entry.reset_at,
            )

    def check_identity(self, identity: str, endpoint: str, config: RateLimitConfig) -> RateLimitResult:
        return self.check(rate_limit_key(identity, endpoint), config)

    def sweep(self) -> int:
        """Drop expired counters to bound memory"""
        removed = self.store.sweep(self.now())
        if removed:
            logger.debug(f"Rate limit sweep removed {removed} expired entries")
        return removed


def rate_limit_headers(result: RateLimitResult, config: RateLimitConfig) -> Dict[str, str]:
    """Response headers describing the caller's remaining budget"""
    headers = {
        'X-RateLimit-Limit': str(config.max_requests),
        'X-RateLimit-Remaining': str(result.remaining),
        'X-RateLimit-Reset': str(math.ceil(result.reset_at / 1000)),
    }
    if not result.allowed and result.retry_after_seconds is not None:
        headers['Retry-After'] = str(result.retry_after_seconds)
    return headers


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the global rate limiter"""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


async def initialize_rate_limiter():
    """Initialize the rate limiter"""
    limiter = get_rate_limiter()
    logger.info(f"Rate limiter initialized ({type(limiter.store).__name__})")


async def shutdown_rate_limiter():
    """
    Shutdown the rate limiter.

    Counters are process-wide state, so the instance outlives a server
    stop/start cycle and a restarted listener resumes the same budgets.
    """
    if _rate_limiter:
        logger.info("Rate limiter shutdown; counters kept for the process")
