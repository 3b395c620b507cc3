"""
Rate limiting for language model calls.

Keeps the pipeline under the provider's requests-per-minute quota.
Uses a token bucket algorithm for smooth rate limiting.
"""

import logging
import threading
import time
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket rate limiter for one provider.

    Thread-safe. One instance is built per pipeline and handed to the
    classification client.
    """

    def __init__(
        self,
        requests_per_minute: int = 15,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Bucket size and refill rate
            clock: Monotonic time source
            sleep: Wait function (injected by tests)
        """
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(requests_per_minute)
        self._refill_rate = requests_per_minute / 60.0  # tokens per second
        self._last_update = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self.requests_per_minute, self._tokens + elapsed * self._refill_rate)
        self._last_update = now

    def acquire(self, tokens: int = 1, block: bool = True, timeout: float = 30.0) -> bool:
        """
        Acquire tokens for an API call.

        Args:
            tokens: Number of tokens to acquire (usually 1)
            block: If True, wait for tokens. If False, return immediately.
            timeout: Maximum time to wait in seconds (only if block=True)

        Returns:
            True if tokens acquired, False if rate limited
        """
        start_time = self._clock()

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True

                if not block:
                    logger.warning("Rate limit exceeded")
                    return False

                wait_time = (tokens - self._tokens) / self._refill_rate

            elapsed = self._clock() - start_time
            if elapsed + wait_time > timeout:
                logger.warning(f"Rate limit timeout after {elapsed:.1f}s")
                return False

            self._sleep(min(wait_time, 0.5))

    def get_wait_time(self, tokens: int = 1) -> float:
        """Estimated seconds until ``tokens`` are available (0 if now)."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                return 0.0
            return (tokens - self._tokens) / self._refill_rate

    def get_status(self) -> Dict:
        wait = self.get_wait_time()
        with self._lock:
            return {
                "available_tokens": int(self._tokens),
                "requests_per_minute": self.requests_per_minute,
                "wait_time_seconds": wait,
            }
