"""
Resilient remote calls for every external integration.

One shape for attestation, registry, and vault calls: try the remote
capability, and on failure either propagate the ExternalServiceError or run
a deterministic local substitute, depending on the integration's fallback
flag. Callers never need to know which path produced the value unless the
result tags its provenance (`via`).

Key patterns:
- ServiceOutage: per-integration outage tracking. After repeated upstream
  failures the integration is marked down for a cooldown; calls during the
  cooldown skip the remote and surface the last upstream error.
- Unconfigured services (no base URL) go straight to the fallback.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import ExternalServiceError


T = TypeVar("T")

HEALTHY = "healthy"
DOWN = "down"
RECOVERING = "recovering"


# =============================================================================
# SERVICE OUTAGE TRACKING
# =============================================================================

class ServiceOutage:
    """
    Outage state of one remote integration.

    - healthy -> down: `failure_threshold` consecutive upstream failures
    - down -> recovering: once `cooldown_seconds` have passed
    - recovering -> healthy: `recovery_successes` remote successes in a row
    - recovering -> down: any upstream failure
    """

    def __init__(self, service: str, failure_threshold: int = 5,
                 cooldown_seconds: float = 60,
                 recovery_successes: int = 3,
                 clock: Optional[Callable[[], float]] = None):
        self.service = service
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.recovery_successes = recovery_successes
        self._clock = clock or time.monotonic

        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._recovered_calls = 0
        # None while healthy; set when the integration is marked down
        self._down_until: Optional[float] = None
        self._last_error: Optional[ExternalServiceError] = None

    def _state(self, now: float) -> str:
        if self._down_until is None:
            return HEALTHY
        return DOWN if now < self._down_until else RECOVERING

    @property
    def state(self) -> str:
        with self._lock:
            return self._state(self._clock())

    def blocking_error(self) -> Optional[ExternalServiceError]:
        """The upstream error to surface instead of calling out, or None."""
        with self._lock:
            if self._state(self._clock()) == DOWN:
                return self._last_error
            return None

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            if self._down_until is None:
                return
            self._recovered_calls += 1
            if self._recovered_calls >= self.recovery_successes:
                self._down_until = None
                self._recovered_calls = 0

    def record_failure(self, error: ExternalServiceError) -> None:
        with self._lock:
            now = self._clock()
            self._last_error = error
            self._consecutive_failures += 1
            self._recovered_calls = 0
            if (self._down_until is not None
                    or self._consecutive_failures >= self.failure_threshold):
                self._down_until = now + self.cooldown_seconds

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            state = self._state(now)
            return {
                "state": state,
                "consecutive_failures": self._consecutive_failures,
                "last_error": self._last_error.upstream_message if self._last_error else None,
                "retry_in_seconds": (
                    round(self._down_until - now, 1) if state == DOWN else 0
                ),
            }


# =============================================================================
# RESILIENT REMOTE CALL
# =============================================================================

class ResilientRemoteCall:
    """Remote-first call with an optional local substitute."""

    def __init__(self, service: str, plugin=None, allow_fallback: bool = True,
                 enabled: bool = True,
                 outage: Optional[ServiceOutage] = None):
        """
        Args:
            service: Name used in logs and errors (e.g. 'attestation')
            plugin: pyln Plugin (or anything with .log) for logging
            allow_fallback: Substitute the local fallback on remote failure
            enabled: False when the remote service is not configured
            outage: Outage tracker for the remote side
        """
        self.service = service
        self.plugin = plugin
        self.allow_fallback = allow_fallback
        self.enabled = enabled
        self.outage = outage or ServiceOutage(service)

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"cl-stream: {self.service}: {msg}", level=level)

    def call(self, remote_fn: Callable[[], T], local_fallback_fn: Callable[[], T],
             allow_fallback: Optional[bool] = None, label: str = "") -> T:
        """
        Run `remote_fn`; on ExternalServiceError run `local_fallback_fn` if
        fallback is allowed, otherwise re-raise the original error. While the
        service is marked down the remote is skipped and its last error is
        handled the same way.
        """
        if allow_fallback is None:
            allow_fallback = self.allow_fallback
        what = label or "call"

        if not self.enabled:
            return local_fallback_fn()

        blocked = self.outage.blocking_error()
        if blocked is not None:
            return self._degrade(blocked, local_fallback_fn, allow_fallback, what)

        try:
            value = remote_fn()
        except ExternalServiceError as e:
            self.outage.record_failure(e)
            return self._degrade(e, local_fallback_fn, allow_fallback, what)

        self.outage.record_success()
        return value

    def _degrade(self, error: ExternalServiceError, local_fallback_fn: Callable[[], T],
                 allow_fallback: bool, what: str) -> T:
        if not allow_fallback:
            self._log(f"{what} failed, fallback disabled: {error.upstream_message}",
                      level="warn")
            raise error
        self._log(f"{what} unavailable ({error.upstream_message}), using local fallback",
                  level="warn")
        return local_fallback_fn()
