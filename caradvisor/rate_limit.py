import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

# Defaults (overridden from app config)
RATE_LIMIT_WINDOW_SEC = 60
RATE_LIMIT_MAX_REQUESTS = 20


def get_client_ip() -> str:
    # remote_addr as resolved by ProxyFix from the trusted proxy hops
    ip = get_remote_address() or ""
    return ip[:64] if ip else "unknown"


class SlidingWindowRateLimiter:
    """Per-address trailing-window request counter.

    Only accepted requests are recorded, so a client that keeps hammering while
    throttled does not extend its own lockout. State lives in process memory
    and resets on restart.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_sec: float = RATE_LIMIT_WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._history: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _prune(self, history: Deque[float], now: float) -> Deque[float]:
        cutoff = now - self.window_sec
        while history and history[0] <= cutoff:
            history.popleft()
        return history

    def _sweep(self, now: float) -> None:
        # Drop addresses with nothing left in the window, at most once per window
        if now - self._last_sweep < self.window_sec:
            return
        self._last_sweep = now
        for address in list(self._history):
            if not self._prune(self._history[address], now):
                del self._history[address]

    def check(self, address: str) -> Tuple[bool, int, float]:
        """Returns (allowed, count_in_window, retry_after_seconds)."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            history = self._prune(self._history.get(address) or deque(), now)
            if len(history) >= self.max_requests:
                retry_after = max(0.0, history[0] + self.window_sec - now)
                return False, len(history), retry_after
            history.append(now)
            self._history[address] = history
            return True, len(history), 0.0

    def allow(self, address: str) -> bool:
        allowed, _, _ = self.check(address)
        return allowed
