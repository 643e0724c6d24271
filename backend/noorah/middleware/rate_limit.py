from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass

from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..observability.logging import get_logger
from ..problem_details import problem_response
from ..settings import settings

# Endpoints that check a one-time code; brute force targets.
LIMITED_PATHS = frozenset(
    {
        "/api/mfa/enable",
        "/api/mfa/verify",
        "/api/mfa/disable",
        "/api/mfa/backup-codes/regenerate",
    }
)

WINDOW_SECONDS = 60.0


@dataclass
class _Bucket:
    window_start: float
    count: int


class MfaRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window limit per client IP and bearer token on MFA code endpoints.

    In-memory per process; the persistent lockout in the MFA service is the
    real defence, this only blunts bursts.
    """

    def __init__(self, app, *, maxsize: int = 10_000):
        super().__init__(app)
        # Buckets are mutated in place so the TTL runs from the window start.
        self._buckets: TTLCache[str, _Bucket] = TTLCache(maxsize=maxsize, ttl=WINDOW_SECONDS)
        self._log = get_logger("rate_limit")

    def _client_key(self, request: Request) -> str:
        # Prefer X-Forwarded-For (ALB), fall back to the socket peer.
        xff = (request.headers.get("x-forwarded-for") or "").strip()
        ip = xff.split(",")[0].strip() if xff else ""
        if not ip and request.client:
            ip = request.client.host or ""
        auth = request.headers.get("authorization") or ""
        who = hashlib.sha256(auth.encode("utf-8")).hexdigest()[:12] if auth else "anon"
        return f"{ip or 'unknown'}:{who}"

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method.upper() != "POST" or request.url.path not in LIMITED_PATHS:
            return await call_next(request)

        rpm = max(1, min(6000, int(settings.mfa_rate_limit_rpm or 20)))
        key = self._client_key(request)
        now = time.monotonic()

        b = self._buckets.get(key)
        if b is None or (now - b.window_start) >= WINDOW_SECONDS:
            b = _Bucket(window_start=now, count=0)
            self._buckets[key] = b

        b.count += 1
        if b.count > rpm:
            retry_after = int(max(1.0, WINDOW_SECONDS - (now - b.window_start)))
            self._log.warning("mfa_rate_limited", path=request.url.path, retry_after_seconds=retry_after)
            return problem_response(
                request=request,
                status_code=429,
                detail="Too many requests",
                extensions={"code": "RateLimited"},
                retry_after_seconds=retry_after,
            )

        return await call_next(request)
