"""
Redis-backed sliding window rate limiter.

Tiers:
  - Anonymous: 10 req/min
  - Authenticated: 60 req/min (general)
  - Backfill scans (/backfill/preview, /backfill/info): 6 req/min per user
"""

import math
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from services.timeline.config import settings

# Endpoints that scan a user's whole ping history
BACKFILL_SCAN_PREFIXES = ("/backfill/preview/", "/backfill/info/")


def _get_rate_limit(path: str, is_authenticated: bool) -> tuple[int, str]:
    """Return (limit_per_min, tier_name) for the given path and auth state."""
    for prefix in BACKFILL_SCAN_PREFIXES:
        if path.startswith(prefix):
            return settings.rate_limit_backfill_per_min, "backfill"
    if is_authenticated:
        return settings.rate_limit_auth_per_min, "auth"
    return settings.rate_limit_anon_per_min, "anon"


def _get_client_key(request: Request) -> tuple[str, bool]:
    """Extract client identifier and whether they're authenticated."""
    # X-User-Id is set by the fronting web layer after it authenticates the session
    user_id = request.headers.get("x-user-id", "").strip()
    if user_id:
        return f"user:{user_id}", True
    # Fall back to IP
    client_ip = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    return f"ip:{client_ip}", False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter backed by Redis sorted sets."""

    def __init__(self, app, redis_client=None):
        super().__init__(app)
        self.redis = redis_client

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip rate limiting for health checks
        if request.url.path == "/health":
            return await call_next(request)

        if self.redis is None:
            return await call_next(request)

        client_key, is_authenticated = _get_client_key(request)
        limit, tier = _get_rate_limit(request.url.path, is_authenticated)
        window_key = f"ratelimit:{tier}:{client_key}"

        now = time.time()
        window_start = now - 60.0  # 1-minute sliding window

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(window_key, 0, window_start)
        pipe.zcard(window_key)
        pipe.zadd(window_key, {f"{now}:{id(request)}": now})
        pipe.expire(window_key, 120)
        results = await pipe.execute()

        current_count = results[1]

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, limit - current_count - 1)),
            "X-RateLimit-Reset": str(int(now + 60)),
        }

        if current_count >= limit:
            # a slot frees up once the oldest request in the window ages out
            oldest = await self.redis.zrange(window_key, 0, 0, withscores=True)
            retry_after = math.ceil(oldest[0][1] - window_start) if oldest else 60
            headers["Retry-After"] = str(max(1, min(60, retry_after)))
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": "RATE_LIMITED",
                        "message": f"Rate limit exceeded. Max {limit} requests per minute for {tier} tier.",
                    },
                    "requestId": request.state.__dict__.get("request_id", ""),
                },
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
