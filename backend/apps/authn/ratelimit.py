"""
Fixed-window rate limiter.

A window is created lazily on a user's first request and lasts
`window_seconds`; once `now > expires_at` the next request opens a fresh
window. Bursts at window boundaries are accepted.

Window state lives behind a WindowStore:
- InMemoryWindowStore: dict behind a lock, one process
- RedisWindowStore: atomic Lua script, shared by every instance
"""
import math
import os
import time
import logging
import functools
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis
from django.conf import settings
from django.http import JsonResponse

from .audit import audit_ratelimit_exceeded

logger = logging.getLogger(__name__)


UPLOAD_RATE_LIMIT = {
    'window_seconds': 60,
    'max_requests': 10,
}


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: Optional[int] = None

    @property
    def retry_after_seconds(self) -> int:
        if not self.retry_after_ms:
            return 0
        return max(1, math.ceil(self.retry_after_ms / 1000))


def is_rate_limiting_disabled() -> bool:
    """Check if rate limiting is disabled (dev mode only)."""
    return os.getenv('DISABLE_RATE_LIMITING', '').lower() in ('true', '1', 'yes')


class WindowStore:
    """
    Storage for fixed-window counters.

    consume() must check and increment atomically; it returns
    (allowed, count in window, seconds until the window expires).
    """

    def consume(self, key: str, limit: int, window_seconds: int, now: float) -> Tuple[bool, int, float]:
        raise NotImplementedError

    def refund(self, key: str, now: float) -> None:
        raise NotImplementedError


@dataclass
class _Window:
    count: int
    expires_at: float


class InMemoryWindowStore(WindowStore):
    """
    Per-process counters; correct only for a single server instance.

    Expired windows are swept during consume() at most once per window
    length, so the map only holds users seen in roughly the last two windows.
    """

    def __init__(self):
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep: Optional[float] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._windows

    def consume(self, key, limit, window_seconds, now):
        with self._lock:
            if self._next_sweep is None:
                self._next_sweep = now + window_seconds
            elif now >= self._next_sweep:
                removed = self._drop_expired(now)
                self._next_sweep = now + window_seconds
                if removed:
                    logger.debug(f"Swept {removed} expired rate limit windows")

            window = self._windows.get(key)
            if window is None or now > window.expires_at:
                window = _Window(count=0, expires_at=now + window_seconds)
                self._windows[key] = window

            if window.count >= limit:
                return False, window.count, window.expires_at - now

            window.count += 1
            return True, window.count, window.expires_at - now

    def refund(self, key, now):
        with self._lock:
            window = self._windows.get(key)
            if window is not None and now <= window.expires_at and window.count > 0:
                window.count -= 1

    def purge_expired(self, now: float) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            return self._drop_expired(now)

    def _drop_expired(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if now > w.expires_at]
        for key in expired:
            del self._windows[key]
        return len(expired)


# KEYS[1] = counter key; ARGV = limit, window in ms
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
    return {0, current, redis.call('PTTL', key)}
end

current = redis.call('INCR', key)
if current == 1 then
    redis.call('PEXPIRE', key, window_ms)
end
return {1, current, redis.call('PTTL', key)}
"""

REFUND_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
    redis.call('DECR', KEYS[1])
end
return current
"""


def get_redis_client() -> redis.Redis:
    """Get a Redis client from the configured URL."""
    redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
    return redis.from_url(redis_url, decode_responses=True)


class RedisWindowStore(WindowStore):
    """
    Counters in Redis; expiry is Redis' own PEXPIRE so the `now` passed
    by the limiter is not used.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self._redis = client
        self._consume_script = None
        self._refund_script = None

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    def consume(self, key, limit, window_seconds, now):
        if self._consume_script is None:
            self._consume_script = self.redis.register_script(FIXED_WINDOW_SCRIPT)

        allowed, count, ttl_ms = self._consume_script(
            keys=[f"ratelimit:{key}"],
            args=[limit, int(window_seconds * 1000)]
        )
        if int(ttl_ms) < 0:
            ttl_ms = window_seconds * 1000
        return bool(allowed), int(count), int(ttl_ms) / 1000

    def refund(self, key, now):
        if self._refund_script is None:
            self._refund_script = self.redis.register_script(REFUND_SCRIPT)
        self._refund_script(keys=[f"ratelimit:{key}"], args=[])


class FixedWindowRateLimiter:
    """
    Per-user fixed-window throttle over an injected store and clock.
    """

    def __init__(
        self,
        store: Optional[WindowStore] = None,
        limit: int = 20,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
        prefix: str = 'chat',
    ):
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.store = store if store is not None else InMemoryWindowStore()
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    def check(self, user_id: str) -> RateLimitResult:
        """Count one request for the user and decide whether it may proceed."""
        if is_rate_limiting_disabled():
            return RateLimitResult(allowed=True, limit=self.limit, remaining=self.limit)

        try:
            allowed, count, reset_in = self.store.consume(
                self._key(user_id), self.limit, self.window_seconds, self.clock()
            )
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            # Fail open - allow request if Redis is down
            return RateLimitResult(allowed=True, limit=self.limit, remaining=0)

        if allowed:
            return RateLimitResult(allowed=True, limit=self.limit, remaining=max(0, self.limit - count))

        return RateLimitResult(
            allowed=False,
            limit=self.limit,
            remaining=0,
            retry_after_ms=max(1, math.ceil(reset_in * 1000)),
        )

    def refund(self, user_id: str) -> None:
        """Give back one unit of the user's current window."""
        try:
            self.store.refund(self._key(user_id), self.clock())
        except redis.RedisError as e:
            logger.error(f"Redis error refunding rate limit: {e}")


def build_store(backend: str) -> WindowStore:
    if backend == 'redis':
        return RedisWindowStore()
    if backend == 'memory':
        return InMemoryWindowStore()
    raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend}")


def build_chat_limiter() -> FixedWindowRateLimiter:
    """Chat limiter configured from settings."""
    return FixedWindowRateLimiter(
        store=build_store(settings.RATE_LIMIT_BACKEND),
        limit=settings.CHAT_RATE_LIMIT_REQUESTS,
        window_seconds=settings.CHAT_RATE_LIMIT_WINDOW,
        prefix='chat',
    )


_upload_limiter: Optional[FixedWindowRateLimiter] = None


def get_upload_limiter() -> FixedWindowRateLimiter:
    global _upload_limiter
    if _upload_limiter is None:
        _upload_limiter = FixedWindowRateLimiter(
            store=build_store(settings.RATE_LIMIT_BACKEND),
            limit=UPLOAD_RATE_LIMIT['max_requests'],
            window_seconds=UPLOAD_RATE_LIMIT['window_seconds'],
            prefix='upload',
        )
    return _upload_limiter


def check_upload_rate_limit(user_id: str) -> RateLimitResult:
    """Check rate limit for document upload."""
    return get_upload_limiter().check(user_id)


def add_rate_limit_headers(response, result: RateLimitResult):
    """Add standard rate limit headers to a response."""
    response['X-RateLimit-Limit'] = str(result.limit)
    response['X-RateLimit-Remaining'] = str(result.remaining)
    return response


def rate_limit_response(result: RateLimitResult, message: Optional[str] = None) -> JsonResponse:
    """Generate a 429 rate limit exceeded response."""
    seconds = result.retry_after_seconds or 1
    response = JsonResponse(
        {
            'code': 'RATE_LIMITED',
            'message': message or f"Too many requests. Please wait {seconds} seconds.",
            'retryAfter': seconds,
        },
        status=429
    )
    response['Retry-After'] = str(seconds)
    add_rate_limit_headers(response, result)
    return response


def rate_limited(check_func: Callable[[str], RateLimitResult], endpoint: str = ''):
    """
    Decorator to apply rate limiting to a view.

    Usage:
        @auth_required
        @rate_limited(check_upload_rate_limit, 'upload')
        def upload_document(request):
            ...
    """
    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapper(request, *args, **kwargs):
            user_id = getattr(getattr(request, 'user_claims', None), 'sub', None)
            if not user_id:
                # No user ID - let auth handle it
                return view_func(request, *args, **kwargs)

            result = check_func(user_id)

            if not result.allowed:
                logger.warning(f"Rate limit exceeded for user {user_id}")
                audit_ratelimit_exceeded(request, endpoint or view_func.__name__, result.limit)
                return rate_limit_response(result)

            response = view_func(request, *args, **kwargs)
            add_rate_limit_headers(response, result)
            return response

        return wrapper
    return decorator
