from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.context import get_correlation_id
from leadflow.core.auth import bearer_token, decode_token
from leadflow.core.config import get_settings


CRM_PREFIX = "/api/crm"
WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationLimiter:
    """Token buckets keyed by (subject, CRM resource)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, subject: str, resource: str, per_window: int) -> int:
        """Consume one token; returns 0 when allowed, otherwise the seconds to wait."""
        if per_window <= 0:
            return WINDOW_SECONDS

        rate = per_window / WINDOW_SECONDS
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get((subject, resource))
            if bucket is None:
                bucket = self._buckets[(subject, resource)] = _Bucket(tokens=float(per_window), refilled_at=now)
            bucket.tokens = min(float(per_window), bucket.tokens + (now - bucket.refilled_at) * rate)
            bucket.refilled_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = MutationLimiter()


def crm_resource(path: str) -> str:
    # /api/crm/leads/{id}/interactions counts against "leads"
    remainder = path[len(CRM_PREFIX):].strip("/")
    return remainder.split("/", 1)[0] or "crm"


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = frozenset({"POST", "PUT", "PATCH", "DELETE"})

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in self.mutating_methods
            or not path.startswith(CRM_PREFIX)
        ):
            return await call_next(request)

        retry_after = _limiter.take(
            subject=decode_token(bearer_token(request)).sub,
            resource=crm_resource(path),
            per_window=settings.rate_limit_crm_mutations_per_minute,
        )
        if retry_after == 0:
            return await call_next(request)
        return _rate_limited(request, retry_after)


def _rate_limited(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": {"retry_after": retry_after},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


def reset_rate_limiter() -> None:
    _limiter.clear()
