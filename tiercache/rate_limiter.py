"""Cooldown throttling for upstream services that are failing or rate limiting us."""

import threading
from time import time
from typing import Any, Callable, Dict, Optional

# Configuration
INITIAL_COOLDOWN_SECONDS = 60
MAX_COOLDOWN_SECONDS = 1800  # 30 minutes
ERROR_THRESHOLD = 3  # Consecutive errors before backing off


class UpstreamThrottle:
    """
    Per-service cooldown after upstream errors.

    A 429 puts the service straight into the maximum cooldown. Other errors
    are counted; from the third consecutive error the cooldown doubles each
    time (60s, 120s, 240s, ...) up to the maximum. Any success resets it.
    Thread-safe implementation.
    """

    def __init__(
        self,
        service: str,
        initial_cooldown: int = INITIAL_COOLDOWN_SECONDS,
        max_cooldown: int = MAX_COOLDOWN_SECONDS,
        error_threshold: int = ERROR_THRESHOLD,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.service = service
        self.initial_cooldown = initial_cooldown
        self.max_cooldown = max_cooldown
        self.error_threshold = error_threshold
        self._clock = clock or time
        self._error_count = 0
        self._cooldown_until: Optional[float] = None
        self._lock = threading.Lock()

    def should_throttle(self) -> bool:
        """True while the service is cooling down."""
        with self._lock:
            return self._cooldown_until is not None and self._clock() < self._cooldown_until

    def remaining_cooldown(self) -> int:
        """Seconds until requests are allowed again (0 if not throttled)."""
        with self._lock:
            if self._cooldown_until is None:
                return 0
            return max(0, int(self._cooldown_until - self._clock()))

    def record_success(self) -> None:
        with self._lock:
            self._error_count = 0
            self._cooldown_until = None

    def record_error(self, status_code: int = 0) -> None:
        """
        Record a failed upstream call.

        Args:
            status_code: HTTP status of the failure, 0 for transport errors
        """
        with self._lock:
            # Immediate cooldown for rate limit responses
            if status_code == 429:
                self._set_cooldown(self.max_cooldown)
                return

            self._error_count += 1
            if self._error_count >= self.error_threshold:
                multiplier = self._error_count - self.error_threshold
                cooldown = self.initial_cooldown * (2 ** multiplier)
                self._set_cooldown(min(cooldown, self.max_cooldown))

    def _set_cooldown(self, seconds: int) -> None:
        """Caller must hold the lock."""
        self._cooldown_until = self._clock() + seconds

    def clear(self) -> None:
        """
        Reset error count and cooldown.

        Useful for testing or admin override.
        """
        self.record_success()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            error_count = self._error_count
        return {
            "service": self.service,
            "throttled": self.should_throttle(),
            "error_count": error_count,
            "cooldown_remaining": self.remaining_cooldown(),
        }
