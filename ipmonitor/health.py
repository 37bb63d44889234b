"""Health tracking for the monitor loop.

A two-state machine (healthy / unhealthy) driven by cycle outcomes:
consecutive failures push it to unhealthy once they reach the threshold,
and any success resets it.  The most recent errors are kept in a bounded
ring for inspection through the health endpoint.
"""

import copy
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Union

from ipmonitor.models import ChangeEvent, HealthState
from ipmonitor.utils import utc_now_iso

logger = logging.getLogger(__name__)


class HealthStatusTracker:
    """Records check outcomes and exposes a read-only snapshot.

    Args:
        threshold: Consecutive failures before the state turns unhealthy.
        max_errors: Size of the recent-errors ring buffer.
    """

    DEFAULT_THRESHOLD = 5
    DEFAULT_MAX_ERRORS = 10

    def __init__(self, threshold: int = DEFAULT_THRESHOLD, max_errors: int = DEFAULT_MAX_ERRORS):
        self.threshold = threshold
        self.max_errors = max_errors
        self._state = HealthState()
        self._errors: Deque[Dict[str, str]] = deque(maxlen=max_errors)
        self._last_check_epoch: Optional[float] = None
        self._started_monotonic = time.monotonic()

    def record_check(self, success: bool = True,
                     error: Optional[Union[BaseException, str]] = None) -> bool:
        """Record the outcome of one cycle.

        Returns:
            ``True`` only when this failure turned the state unhealthy.
        """
        now = utc_now_iso()
        state = self._state
        state.last_check_at = now
        self._last_check_epoch = time.time()
        state.total_checks += 1

        if success:
            if state.consecutive_failures:
                logger.info("Health recovered after %d consecutive failures",
                            state.consecutive_failures)
            state.last_success_at = now
            state.consecutive_failures = 0
            state.healthy = True
            self._errors.clear()
            return False

        state.consecutive_failures += 1
        if error is not None:
            self._errors.append({
                "timestamp": now,
                "type": type(error).__name__ if isinstance(error, BaseException) else "Error",
                "message": str(error),
            })
        was_healthy = state.healthy
        state.healthy = state.consecutive_failures < self.threshold
        if was_healthy and not state.healthy:
            logger.error("Service unhealthy after %d consecutive failures",
                         state.consecutive_failures)
            return True
        return False

    def record_change(self, old: Optional[str], new: str) -> ChangeEvent:
        """Remember the latest address transition (only one is kept)."""
        event = ChangeEvent(old_address=old, new_address=new)
        self._state.last_change = event
        return event

    def is_healthy(self) -> bool:
        return self._state.healthy

    def snapshot(self) -> HealthState:
        """Copy of the current state; mutating it does not affect the tracker."""
        state = copy.copy(self._state)
        state.recent_errors = [dict(e) for e in self._errors]
        return state

    def last_check_epoch(self) -> Optional[float]:
        return self._last_check_epoch

    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_monotonic

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot().to_dict()
        uptime = self.uptime_seconds()
        data["uptime_seconds"] = round(uptime, 3)
        data["uptime_hours"] = round(uptime / 3600, 2)
        data["threshold"] = self.threshold
        return data
