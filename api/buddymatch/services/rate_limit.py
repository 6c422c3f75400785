import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request


@dataclass
class RateDecision:
    allowed: bool
    retry_after_seconds: int


class InMemoryRateLimiter:
    """Sliding-window request counter keyed by ``(route, user)``."""

    def __init__(self, clock=time.time) -> None:
        self._hits: dict[tuple[str, str], deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def check(self, route_key: str, user_key: str, limit: int, window_seconds: int) -> RateDecision:
        now = self._clock()
        with self._lock:
            hits = self._hits[(route_key, user_key)]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                oldest_expires = hits[0] + window_seconds
                return RateDecision(allowed=False, retry_after_seconds=max(1, int(oldest_expires - now)))
            hits.append(now)
        return RateDecision(allowed=True, retry_after_seconds=0)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


limiter = InMemoryRateLimiter()


def _caller_key(request: Request) -> str:
    # requests without X-User-Id are rejected by current_user_id
    return request.headers.get("x-user-id", "").strip() or "anonymous"


def rate_limit_dependency(route_key: str, limit: int, window_seconds: int):
    def _dep(request: Request) -> None:
        decision = limiter.check(route_key, _caller_key(request), limit=limit, window_seconds=window_seconds)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests. Retry in {decision.retry_after_seconds}s",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )

    return Depends(_dep)
