"""Rate-limit policy: enforce Kraken request quotas per endpoint with a sliding window."""
import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    request_times: List[float] = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(time.monotonic())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.monotonic())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - time.monotonic())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint.

    Kraken meters private calls with a decaying counter (15 calls, -1 every
    3 s on the starter tier), modelled here as 15 calls per 45 s. Public
    endpoints allow roughly one call per second.
    """

    DEFAULT_QUOTAS = {
        "private": RateLimitQuota(requests_per_window=15, window_seconds=45),
        "/0/private/AddOrder": RateLimitQuota(requests_per_window=15, window_seconds=45),
        "default": RateLimitQuota(requests_per_window=1, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.states: Dict[str, RateLimitState] = {}
        # per bucket: a wait in one bucket never blocks another
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(cls, private_calls_per_window: int, window_seconds: float, public_per_second: int) -> "RateLimitManager":
        private = RateLimitQuota(requests_per_window=private_calls_per_window, window_seconds=window_seconds)
        return cls({
            "private": private,
            "/0/private/AddOrder": private,
            "default": RateLimitQuota(requests_per_window=public_per_second, window_seconds=1),
        })

    def _bucket(self, endpoint: str) -> str:
        if endpoint in self.quotas:
            return endpoint
        if endpoint.startswith("/0/private/"):
            return "private"
        return "default"

    def _get_state(self, endpoint: str) -> RateLimitState:
        bucket = self._bucket(endpoint)
        if bucket not in self.states:
            self.states[bucket] = RateLimitState(quota=self.quotas[bucket])
        return self.states[bucket]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def acquire(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Wait until a request to ``endpoint`` is allowed and record it.

        Returns:
            True if allowed (or waited successfully), False if ``max_wait`` would be exceeded
        """
        start = time.monotonic()
        async with self._locks[self._bucket(endpoint)]:
            while not self.is_allowed(endpoint):
                wait_time = self.time_until_allowed(endpoint)
                elapsed = time.monotonic() - start
                if elapsed + wait_time > max_wait:
                    return False
                await asyncio.sleep(wait_time)
            self.record_request(endpoint)
            return True
