from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import functools
import inspect
import logging
import math
import time
from typing import Any, Awaitable, Callable, Mapping, Protocol
from uuid import uuid4

from fastapi import Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from scorewatch.core.config import LimiterProfile, Settings, get_settings, load_limiter_profiles
from scorewatch.core.errors import ConfigError, CounterStoreError, UnknownProfileError
from scorewatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"

LOOPBACK_ADDRESS = "127.0.0.1"

HEADER_LIMIT = "X-RateLimit-Limit"
HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_STATUS = "X-RateLimit-Status"


@dataclass(frozen=True)
class WindowCount:
    # Counter store reply for one sliding-window hit.
    admitted: bool
    count: int
    oldest_ms: int


class CounterStore(Protocol):
    async def hit(self, key: str, *, now_ms: int, window_ms: int, limit: int) -> WindowCount: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset: int
    profile: str
    degraded: bool = False
    # Controller clock reading (epoch seconds) the decision was made at.
    checked_at: float | None = None

    @property
    def reset_at(self) -> str:
        return datetime.fromtimestamp(self.reset, tz=timezone.utc).isoformat().replace("+00:00", "Z")

    @property
    def retry_after(self) -> int:
        now = self.checked_at if self.checked_at is not None else time.time()
        return max(0, math.ceil(self.reset - now))


# Sliding log: drop entries older than the window, admit only while under the limit.
_SLIDING_WINDOW_LUA = r"""
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call("ZREMRANGEBYSCORE", key, "-inf", now_ms - window_ms)
local count = redis.call("ZCARD", key)
local admitted = 0
if count < limit then
  redis.call("ZADD", key, now_ms, member)
  count = count + 1
  admitted = 1
end
redis.call("PEXPIRE", key, window_ms)

local oldest_ms = now_ms
local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
if oldest[2] then
  oldest_ms = tonumber(oldest[2])
end

return {admitted, count, oldest_ms}
"""


class RedisCounterStore:
    """Shared counters in Redis; one EVAL per hit keeps check-and-add atomic."""

    def __init__(self, *, redis_url: str | None = None, redis: Redis | None = None) -> None:
        self._redis_url = redis_url or get_settings().redis_url
        self._redis = redis
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_redis(self) -> Redis:
        # Cache the connection per event loop to avoid reconnecting per request.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and (self._redis_loop is None or self._redis_loop == current_loop):
            return self._redis
        async with self._lock:
            if self._redis is None or self._redis_loop != current_loop:
                self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
                self._redis_loop = current_loop
        return self._redis

    async def hit(self, key: str, *, now_ms: int, window_ms: int, limit: int) -> WindowCount:
        redis = await self._get_redis()
        member = f"{now_ms}:{uuid4().hex}"
        result = await redis.eval(_SLIDING_WINDOW_LUA, 1, key, now_ms, window_ms, limit, member)
        try:
            return WindowCount(
                admitted=int(result[0]) == 1,
                count=int(result[1]),
                oldest_ms=int(float(result[2])),
            )
        except (TypeError, ValueError, IndexError) as exc:
            raise CounterStoreError(f"unexpected counter store reply: {result!r}") from exc


class InMemoryCounterStore:
    """Process-local counters for single-instance dev runs and tests."""

    def __init__(self, *, sweep_every: int = 1000) -> None:
        self._entries: dict[str, deque[int]] = {}
        self._windows: dict[str, int] = {}
        self._sweep_every = max(1, sweep_every)
        self._hits = 0
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _trim(entries: deque[int], now_ms: int, window_ms: int) -> None:
        while entries and entries[0] <= now_ms - window_ms:
            entries.popleft()

    def _evict_idle(self, now_ms: int) -> None:
        # Drop identifiers whose whole log has aged out of its window.
        for key in list(self._entries):
            entries = self._entries[key]
            self._trim(entries, now_ms, self._windows[key])
            if not entries:
                del self._entries[key]
                del self._windows[key]

    async def hit(self, key: str, *, now_ms: int, window_ms: int, limit: int) -> WindowCount:
        async with self._lock:
            self._hits += 1
            if self._hits % self._sweep_every == 0:
                self._evict_idle(now_ms)
            entries = self._entries.setdefault(key, deque())
            self._windows[key] = window_ms
            self._trim(entries, now_ms, window_ms)
            admitted = len(entries) < limit
            if admitted:
                entries.append(now_ms)
            oldest_ms = entries[0] if entries else now_ms
            count = len(entries)
            if not entries:
                del self._entries[key]
                del self._windows[key]
            return WindowCount(admitted=admitted, count=count, oldest_ms=oldest_ms)


class AdmissionController:
    def __init__(
        self,
        *,
        profiles: Mapping[str, LimiterProfile],
        store: CounterStore,
        prefix: str = "scorewatch:rl",
        fail_mode: str = FAIL_OPEN,
        timeout_ms: int = 250,
        enabled: bool = True,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        normalized_mode = fail_mode.strip().lower()
        if normalized_mode not in {FAIL_OPEN, FAIL_CLOSED}:
            raise ConfigError(f"unsupported rate limit fail mode: {fail_mode!r}")
        self._profiles = profiles
        self._store = store
        self._prefix = prefix
        self._fail_mode = normalized_mode
        self._timeout_s = max(timeout_ms, 1) / 1000.0
        self.enabled = enabled
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    @property
    def fail_mode(self) -> str:
        return self._fail_mode

    def profile(self, name: str) -> LimiterProfile:
        try:
            return self._profiles[name]
        except KeyError as exc:
            raise UnknownProfileError(f"unknown limiter profile: {name!r}") from exc

    async def check(self, profile: str, identifier: str) -> RateLimitDecision:
        limiter = self.profile(profile)
        now_ms = int(self._time_provider() * 1000)
        key = f"{self._prefix}:{limiter.name}:{identifier}"
        try:
            window = await asyncio.wait_for(
                self._store.hit(key, now_ms=now_ms, window_ms=limiter.window_ms, limit=limiter.limit),
                timeout=self._timeout_s,
            )
        except Exception as exc:  # noqa: BLE001 - guard against counter store connectivity failures
            return self._degraded_decision(limiter, now_ms=now_ms, exc=exc)

        reset = int(math.ceil((window.oldest_ms + limiter.window_ms) / 1000.0))
        if not window.admitted:
            increment_counter(f"rate_limit_hits_total.{limiter.name}")
            return RateLimitDecision(
                allowed=False,
                limit=limiter.limit,
                remaining=0,
                reset=reset,
                profile=limiter.name,
                checked_at=now_ms / 1000.0,
            )
        return RateLimitDecision(
            allowed=True,
            limit=limiter.limit,
            remaining=max(0, limiter.limit - window.count),
            reset=reset,
            profile=limiter.name,
            checked_at=now_ms / 1000.0,
        )

    def _degraded_decision(self, limiter: LimiterProfile, *, now_ms: int, exc: Exception) -> RateLimitDecision:
        increment_counter(f"rate_limit_degraded_total.{limiter.name}")
        logger.warning(
            "rate_limit_degraded profile=%s fail_mode=%s error=%s",
            limiter.name,
            self._fail_mode,
            exc.__class__.__name__,
        )
        reset = int(math.ceil((now_ms + limiter.window_ms) / 1000.0))
        if self._fail_mode == FAIL_CLOSED:
            return RateLimitDecision(
                allowed=False,
                limit=limiter.limit,
                remaining=0,
                reset=reset,
                profile=limiter.name,
                degraded=True,
                checked_at=now_ms / 1000.0,
            )
        return RateLimitDecision(
            allowed=True,
            limit=limiter.limit,
            remaining=limiter.limit,
            reset=reset,
            profile=limiter.name,
            degraded=True,
            checked_at=now_ms / 1000.0,
        )


def build_counter_store(settings: Settings | None = None) -> CounterStore:
    settings = settings or get_settings()
    backend = settings.rl_backend.strip().lower()
    if backend == "redis":
        return RedisCounterStore(redis_url=settings.redis_url)
    if backend == "memory":
        return InMemoryCounterStore()
    raise ConfigError(f"unsupported rate limit backend: {settings.rl_backend!r}")


def build_admission_controller(
    settings: Settings | None = None,
    *,
    store: CounterStore | None = None,
    time_provider: Callable[[], float] | None = None,
) -> AdmissionController:
    settings = settings or get_settings()
    return AdmissionController(
        profiles=load_limiter_profiles(settings),
        store=store or build_counter_store(settings),
        prefix=settings.rl_redis_prefix,
        fail_mode=settings.rl_fail_mode,
        timeout_ms=settings.rl_timeout_ms,
        enabled=settings.rate_limit_enabled,
        time_provider=time_provider,
    )


def get_client_ip(request: Request) -> str:
    # Prefer the first proxy-forwarded address, then the direct header, then loopback.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return LOOPBACK_ADDRESS


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    headers = {
        HEADER_LIMIT: str(decision.limit),
        HEADER_REMAINING: str(decision.remaining),
        HEADER_RESET: str(decision.reset),
    }
    if decision.degraded:
        headers[HEADER_STATUS] = "degraded"
    return headers


def rate_limit_response(decision: RateLimitDecision) -> JSONResponse:
    # Stable 429 payload with the numeric limit fields mirrored in headers.
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Rate limit exceeded",
            "message": "Too many requests. Please try again later.",
            "limit": decision.limit,
            "remaining": decision.remaining,
            "resetAt": decision.reset_at,
        },
        headers=headers,
    )


def rate_limit_unavailable_response(decision: RateLimitDecision) -> JSONResponse:
    # Fail-closed rejection when the counter store cannot be reached.
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "Rate limiting unavailable",
            "code": "RATE_LIMIT_UNAVAILABLE",
            "message": "Request admission is temporarily unavailable. Please try again later.",
            "limit": decision.limit,
            "remaining": decision.remaining,
            "resetAt": decision.reset_at,
        },
        headers=rate_limit_headers(decision),
    )


def get_admission_controller(request: Request) -> AdmissionController:
    controller = getattr(request.app.state, "admission_controller", None)
    if controller is None:
        controller = build_admission_controller()
        request.app.state.admission_controller = controller
    return controller


def _find_request(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Request:
    candidate = kwargs.get("request")
    if isinstance(candidate, Request):
        return candidate
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, Request):
            return value
    raise TypeError("rate limited handlers must accept a Request argument")


IdentifierFn = Callable[[Request], "str | Awaitable[str]"]


def with_rate_limit(
    handler: Callable[..., Awaitable[Any]],
    profile: str,
    *,
    get_identifier: IdentifierFn | None = None,
    controller: AdmissionController | None = None,
) -> Callable[..., Awaitable[Any]]:
    """Wrap an async request handler with an admission check.

    The wrapper exposes the handler's resolved signature so FastAPI injects
    the same parameters. Rejections short-circuit with a 429; admitted
    requests get the limit/remaining/reset headers added to the handler's
    response.
    """

    @functools.wraps(handler)
    async def wrapped(*args: Any, **kwargs: Any) -> Any:
        request = _find_request(args, kwargs)
        active = controller or get_admission_controller(request)
        if not active.enabled:
            return await handler(*args, **kwargs)

        if get_identifier is None:
            identifier = get_client_ip(request)
        else:
            identifier = get_identifier(request)
            if inspect.isawaitable(identifier):
                identifier = await identifier

        decision = await active.check(profile, identifier)
        if not decision.allowed:
            if decision.degraded:
                return rate_limit_unavailable_response(decision)
            return rate_limit_response(decision)

        result = await handler(*args, **kwargs)
        response = result if isinstance(result, Response) else JSONResponse(content=jsonable_encoder(result))
        for name, value in rate_limit_headers(decision).items():
            response.headers[name] = value
        return response

    # FastAPI resolves string annotations against the wrapper's module; pin the handler's resolved signature.
    wrapped.__signature__ = inspect.signature(handler, eval_str=True)  # type: ignore[attr-defined]
    return wrapped
