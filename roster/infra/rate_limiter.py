# roster/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import Request, HTTPException, status

from roster.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Simple in-memory rate limiter using a sliding window.

    Used for two things: per-client limits on the HTTP surface, and
    per-job-type start throttles in the job worker (limit 1 per window).

    NOT horizontally scalable: each process holds its own window,
    so with N replicas the effective limit is N × max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: float = 60, clock=time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[float]]:
        """
        Check if request is allowed for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            self._requests[key] = [
                ts for ts in self._requests[key] if ts > cutoff
            ]

            request_count = len(self._requests[key])

            if request_count >= self.max_requests:
                oldest = min(self._requests[key])
                retry_after = max(oldest + self.window_seconds - now, 0.0)

                # Mask key to avoid logging phone numbers / PII
                masked = key[:4] + "***" if len(key) > 4 else "***"
                logger.debug(
                    "Rate limit exceeded for key=%s", masked,
                    extra={
                        "key_masked": masked,
                        "count": request_count,
                        "limit": self.max_requests,
                        "retry_after": retry_after,
                    }
                )
                return False, retry_after

            self._requests[key].append(now)
            return True, None


class RateLimitDependency:
    """FastAPI dependency for rate limiting"""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        client_ip = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        if request.url.path in ["/health", "/ready"]:
            return

        allowed, retry_after = self.limiter.is_allowed(client_ip)

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(int(retry_after) + 1)} if retry_after is not None else None,
            )
