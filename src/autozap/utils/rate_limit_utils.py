"""
Per-client request limits for the API routers.
Counters live in process memory, so each worker enforces its own limit.
"""
import math
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from fastapi import Request
from fastapi.exceptions import HTTPException

# Utils
from autozap.utils.log_utils import LogUtil

DEFAULT_CLIENT_IP = "127.0.0.1"
MAX_TRACKED_IDENTIFIERS = 10000

# General API limit per client
API_RATE_LIMIT_POINTS = 100
API_RATE_LIMIT_SECONDS = 60


class RateLimiter:
    """
    Sliding window limiter: at most `points` requests per identifier in any
    `duration_seconds` window.
    """

    def __init__(self, name: str, points: int, duration_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.points = points
        self.duration_seconds = duration_seconds
        self.clock = clock
        self._hits: Dict[str, List[float]] = defaultdict(list)

    def _prune(self, now: float) -> None:
        expired = [
            identifier for identifier, hits in self._hits.items()
            if not hits or now - hits[-1] >= self.duration_seconds
        ]
        for identifier in expired:
            del self._hits[identifier]

    def hit(self, identifier: str) -> Optional[int]:
        """
        Count a request.

        Returns:
            None when the request is allowed, otherwise the seconds until the next one is
        """
        now = self.clock()
        if len(self._hits) > MAX_TRACKED_IDENTIFIERS:
            self._prune(now)

        hits = [hit for hit in self._hits[identifier] if now - hit < self.duration_seconds]
        self._hits[identifier] = hits
        if len(hits) >= self.points:
            return max(1, math.ceil(self.duration_seconds - (now - hits[0])))
        hits.append(now)
        return None


def get_client_ip(request: Request) -> str:
    """
    Client address, preferring the headers set by the reverse proxy
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else DEFAULT_CLIENT_IP


def rate_limit_dependency(limiter: RateLimiter, log_util: LogUtil) -> Callable:
    """
    FastAPI dependency that answers 429 with a Retry-After header once the client is over the limit.
    """
    async def check_rate_limit(request: Request):
        client_ip = get_client_ip(request)
        retry_after = limiter.hit(client_ip)
        if retry_after is None:
            return
        log_util.warning(
            service_name="RateLimit",
            message=f"Rate limit '{limiter.name}' exceeded by {client_ip} on {request.url.path}, retry in {retry_after}s"
        )
        raise HTTPException(
            status_code=429,
            detail=f"Muitas requisições. Tente novamente em {retry_after} segundo(s).",
            headers={"Retry-After": str(retry_after)}
        )

    return check_rate_limit
