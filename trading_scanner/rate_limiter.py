# trading_scanner/rate_limiter.py
"""
Rate Budget

Per-provider call quotas for outbound API traffic. Each provider has a
per-minute cap enforced over a true rolling 60-second window (a log of call
timestamps) and a per-day cap that resets at the US/Eastern calendar boundary.

Counters live in memory only. After a restart they start from zero, which can
under-count but never over-count.
"""

import time
import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from . import config
from .models import AdmitResult, RateLimitExceeded
from .utils import log_audit_event, get_eastern_now

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0

_UNSET = object()


class _Quota:
    """Mutable per-provider state."""

    def __init__(self, max_per_minute: Optional[int], max_per_day: Optional[int]):
        self.max_per_minute = max_per_minute
        self.max_per_day = max_per_day
        self.calls = deque()          # monotonic timestamps inside the window
        self.day = None               # calendar date the day counter belongs to
        self.requests_today = 0


class RateBudget:
    """
    Admits or defers calls per provider.

    Args:
        limits: {provider: {'max_per_minute': int|None, 'max_per_day': int|None}}
        clock: monotonic seconds source for the rolling minute window
        now_fn: timezone-aware wall clock for the calendar-day counter
        sleep: used by acquire() while waiting out a denial
    """

    def __init__(
        self,
        limits: Optional[Dict[str, Dict[str, Optional[int]]]] = None,
        clock: Callable[[], float] = time.monotonic,
        now_fn: Callable[[], datetime] = get_eastern_now,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._clock = clock
        self._now_fn = now_fn
        self._sleep = sleep
        self._lock = threading.Lock()
        self._quotas: Dict[str, _Quota] = {}

        for provider, limit in (limits or config.DEFAULT_RATE_LIMITS).items():
            self._quotas[provider] = _Quota(limit.get('max_per_minute'), limit.get('max_per_day'))

    def _quota(self, provider: str) -> _Quota:
        quota = self._quotas.get(provider)
        if quota is None:
            logger.warning(f"No rate limits configured for '{provider}'; admitting without caps")
            quota = self._quotas[provider] = _Quota(None, None)
        return quota

    def _seconds_until_next_day(self, now: datetime) -> float:
        midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        if midnight.tzinfo is not None and hasattr(midnight.tzinfo, 'normalize'):
            midnight = midnight.tzinfo.normalize(midnight)
        return max(0.0, (midnight - now).total_seconds())

    # =========================================================================
    # Admission
    # =========================================================================

    def admit(self, provider: str) -> AdmitResult:
        """
        Admit one call for `provider`, or deny it with a retry delay.

        Expired window entries and a stale day counter are reset first; an
        admitted call counts against both windows.
        """
        with self._lock:
            quota = self._quota(provider)
            now = self._clock()
            wall = self._now_fn()
            today = wall.strftime('%Y-%m-%d')

            while quota.calls and now - quota.calls[0] >= WINDOW_SECONDS:
                quota.calls.popleft()
            if quota.day != today:
                quota.day = today
                quota.requests_today = 0

            if quota.max_per_day is not None and quota.requests_today >= quota.max_per_day:
                return AdmitResult.deny(
                    self._seconds_until_next_day(wall),
                    f"daily limit of {quota.max_per_day} reached"
                )

            if quota.max_per_minute is not None and len(quota.calls) >= quota.max_per_minute:
                if quota.max_per_minute == 0:
                    retry_after = WINDOW_SECONDS
                else:
                    retry_after = quota.calls[0] + WINDOW_SECONDS - now
                return AdmitResult.deny(
                    retry_after,
                    f"per-minute limit of {quota.max_per_minute} reached"
                )

            quota.calls.append(now)
            quota.requests_today += 1
            return AdmitResult.allow()

    def acquire(self, provider: str, timeout: Optional[float] = None) -> None:
        """
        Block until `provider` admits a call.

        Waits out each denial's retry delay as long as the total wait stays
        within `timeout` (default RATE_LIMIT_WAIT_TIMEOUT_SECONDS).

        Raises:
            RateLimitExceeded: the next admission lies beyond the timeout
        """
        if timeout is None:
            timeout = config.RATE_LIMIT_WAIT_TIMEOUT_SECONDS
        waited = 0.0

        while True:
            result = self.admit(provider)
            if result.allowed:
                return

            if waited + result.retry_after > timeout:
                log_audit_event('RATE_LIMIT_DENIED', {
                    'provider': provider,
                    'retry_after': round(result.retry_after, 2),
                    'reason': result.reason
                }, outcome='REJECTED')
                raise RateLimitExceeded(provider, result.retry_after, result.reason)

            logger.info(f"⏳ {provider} {result.reason}; waiting {result.retry_after:.1f}s")
            self._sleep(result.retry_after)
            waited += result.retry_after

    # =========================================================================
    # Status and configuration
    # =========================================================================

    def status(self, provider: str) -> Dict[str, Any]:
        """Current counts and maxima for `provider` (read-only)."""
        with self._lock:
            quota = self._quotas.get(provider) or _Quota(None, None)
            now = self._clock()
            wall = self._now_fn()
            in_window = [t for t in quota.calls if now - t < WINDOW_SECONDS]
            today_count = quota.requests_today if quota.day == wall.strftime('%Y-%m-%d') else 0

            return {
                'provider': provider,
                'requests_this_minute': len(in_window),
                'max_per_minute': quota.max_per_minute,
                'minute_resets_in': round(in_window[0] + WINDOW_SECONDS - now, 3) if in_window else 0.0,
                'requests_today': today_count,
                'max_per_day': quota.max_per_day,
                'day_resets_in': round(self._seconds_until_next_day(wall), 3)
            }

    def status_all(self) -> Dict[str, Dict[str, Any]]:
        return {provider: self.status(provider) for provider in list(self._quotas)}

    def configure(self, provider: str, max_per_minute: Any = _UNSET, max_per_day: Any = _UNSET) -> Dict[str, Any]:
        """
        Update a provider's maxima; takes effect on the next admit().

        Pass None to remove a cap. Omitted arguments keep their current value.
        """
        for name, value in (('max_per_minute', max_per_minute), ('max_per_day', max_per_day)):
            if value is _UNSET or value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer or None, got {value!r}")

        with self._lock:
            quota = self._quotas.get(provider)
            if quota is None:
                quota = self._quotas[provider] = _Quota(None, None)
            if max_per_minute is not _UNSET:
                quota.max_per_minute = max_per_minute
            if max_per_day is not _UNSET:
                quota.max_per_day = max_per_day

        logger.info(
            f"Rate limits for {provider}: {quota.max_per_minute}/min, {quota.max_per_day}/day"
        )
        return self.status(provider)

    def limits(self) -> Dict[str, Dict[str, Optional[int]]]:
        """Configured maxima per provider, in the shape the constructor accepts."""
        with self._lock:
            return {
                provider: {'max_per_minute': q.max_per_minute, 'max_per_day': q.max_per_day}
                for provider, q in self._quotas.items()
            }

    def reset(self, provider: Optional[str] = None) -> None:
        """Clear counters for one provider (or all)."""
        with self._lock:
            targets = [provider] if provider else list(self._quotas)
            for name in targets:
                quota = self._quotas.get(name)
                if quota is not None:
                    quota.calls.clear()
                    quota.day = None
                    quota.requests_today = 0
