"""
agent-shield rate limiter

Sliding-window request log shared by every concurrent action. The check and
the record happen under one lock, so two callers can never both slip under
the limit.
"""

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Optional, Union

from agent_shield.security.policies import Policy, PolicyStore, RateLimits
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["RateLimiter", "RateDecision"]

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after_sec: float = 0.0


class RateLimiter:
    """
    Per-minute / per-hour limiter with a cooldown after the first rejection.

    Args:
        limits: RateLimits, or a Policy / PolicyStore to read them from
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        limits: Union[RateLimits, Policy, PolicyStore],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = limits
        self._clock = clock
        self._lock = Lock()
        self._requests: Deque[float] = deque()
        self._blocked_until = 0.0
        self._rejected = 0

    @property
    def limits(self) -> RateLimits:
        source = self._source
        if isinstance(source, PolicyStore):
            return source.policy.rate_limit
        if isinstance(source, Policy):
            return source.rate_limit
        return source

    def acquire(self) -> RateDecision:
        """Atomically check the windows and record the request if allowed."""
        limits = self.limits

        with self._lock:
            now = self._clock()

            while self._requests and now - self._requests[0] >= HOUR:
                self._requests.popleft()

            if now < self._blocked_until:
                self._rejected += 1
                return RateDecision(False, "Rate limit cooldown active", self._blocked_until - now)

            last_minute = sum(1 for t in self._requests if now - t < MINUTE)
            if last_minute >= limits.max_requests_per_minute:
                return self._reject(now, limits, f"Rate limit exceeded: {limits.max_requests_per_minute}/min")

            if len(self._requests) >= limits.max_requests_per_hour:
                return self._reject(now, limits, f"Rate limit exceeded: {limits.max_requests_per_hour}/hour")

            self._requests.append(now)
            return RateDecision(True)

    def _reject(self, now: float, limits: RateLimits, reason: str) -> RateDecision:
        self._rejected += 1
        self._blocked_until = now + limits.cooldown_after_block_ms / 1000.0
        logger.warning(f"{reason}; cooling down for {limits.cooldown_after_block_ms} ms")
        return RateDecision(False, reason, limits.cooldown_after_block_ms / 1000.0)

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
            self._blocked_until = 0.0
            self._rejected = 0

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "requests_last_minute": sum(1 for t in self._requests if now - t < MINUTE),
                "requests_last_hour": sum(1 for t in self._requests if now - t < HOUR),
                "rejected": self._rejected,
                "cooldown_remaining_sec": max(0.0, self._blocked_until - now),
            }
