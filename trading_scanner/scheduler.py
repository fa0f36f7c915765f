# trading_scanner/scheduler.py
"""
Profile Scheduler

Keeps one recurring job per schedule-enabled profile, keyed by profile id.
Intervals are translated into cron-style cadences:

    interval < 60      */N * * * *     (every N minutes)
    interval == 60     0 * * * *       (hourly)
    interval > 60      0 */H * * *     (every H = interval // 60 hours)

Cadences follow cron semantics on the US/Eastern wall clock, so a 45 minute
interval fires at :00 and :45 of every hour.

Each fire runs in its own job thread. A failing profile is reported and logged
but never cancels or delays another profile's job.
"""

import math
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from . import config
from .models import AlpacaClientError, InvalidOrder, OrderSide, OrderType
from .utils import get_eastern_now, log_audit_event

logger = logging.getLogger(__name__)

# Two days covers every cadence produced by cadence_for_interval
_MAX_SEARCH_MINUTES = 2 * 24 * 60


# =============================================================================
# Cron Cadence
# =============================================================================

def cadence_for_interval(interval_minutes: int) -> str:
    """
    Convert a schedule interval into a cron expression.

    Args:
        interval_minutes: Profile schedule interval in minutes

    Returns:
        Five-field cron expression

    Raises:
        ValueError: interval is not a positive number of minutes
    """
    interval = int(interval_minutes)
    if interval <= 0:
        raise ValueError(f"Schedule interval must be positive, got {interval_minutes}")

    if interval < 60:
        return f"*/{interval} * * * *"
    if interval == 60:
        return "0 * * * *"
    return f"0 */{interval // 60} * * *"


def _field_matches(field: str, value: int) -> bool:
    if field == '*':
        return True
    if field.startswith('*/'):
        step = int(field[2:])
        return step > 0 and value % step == 0
    return int(field) == value


def _normalize(moment: datetime) -> datetime:
    # pytz arithmetic keeps the old UTC offset across a DST change
    tz = moment.tzinfo
    return tz.normalize(moment) if hasattr(tz, 'normalize') else moment


def next_fire_time(expression: str, after: datetime) -> datetime:
    """
    Next minute strictly after `after` that matches the minute and hour fields
    of `expression`. Day, month and weekday fields must be '*'.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {expression!r}")
    minute_field, hour_field = fields[0], fields[1]
    if any(f != '*' for f in fields[2:]):
        raise ValueError(f"Only minute/hour cadences are supported: {expression!r}")

    candidate = _normalize(after.replace(second=0, microsecond=0) + timedelta(minutes=1))
    for _ in range(_MAX_SEARCH_MINUTES):
        if _field_matches(minute_field, candidate.minute) and _field_matches(hour_field, candidate.hour):
            return candidate
        candidate = _normalize(candidate + timedelta(minutes=1))

    raise ValueError(f"Cron expression never fires: {expression!r}")


# =============================================================================
# Recurring Job
# =============================================================================

class RecurringJob:
    """
    Thread that invokes `callback` at every fire time of a cron expression.

    cancel() is synchronous and idempotent: after it returns (with wait=True)
    no further fire starts, and a fire already in progress has completed.
    """

    def __init__(
        self,
        name: str,
        expression: str,
        callback: Callable[[], Any],
        now_fn: Callable[[], datetime] = get_eastern_now
    ):
        self.name = name
        self.expression = expression
        self.callback = callback
        self.now_fn = now_fn
        self.next_run: Optional[datetime] = None
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"job-{name}", daemon=True)

    def start(self) -> 'RecurringJob':
        self._thread.start()
        return self

    @property
    def is_active(self) -> bool:
        return not self._cancelled.is_set() and self._thread.is_alive()

    def _run(self) -> None:
        while not self._cancelled.is_set():
            now = self.now_fn()
            self.next_run = next_fire_time(self.expression, now)
            if self._cancelled.wait((self.next_run - now).total_seconds()):
                break
            try:
                self.callback()
            except Exception as e:
                logger.exception(f"Job {self.name} failed: {e}")

    def cancel(self, wait: bool = True) -> None:
        self._cancelled.set()
        self.next_run = None
        if wait and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()


# =============================================================================
# Scheduler
# =============================================================================

class Scheduler:
    """
    Registry of recurring scan jobs, one per profile.

    Args:
        store: TradingStore
        scanner: ProfileScanner (run_scan(profile_id) -> {'matches': [...]})
        broker: AlpacaBroker, consulted for market-open state
        executor: OrderExecutor used by auto-execute profiles
        notifier: Notifier
        job_factory: callable(name, expression, callback) returning a started
            job with a cancel(wait) method
    """

    def __init__(
        self,
        store,
        scanner,
        broker,
        executor,
        notifier,
        trading_mode=None,
        job_factory: Optional[Callable[..., Any]] = None
    ):
        self.store = store
        self.scanner = scanner
        self.broker = broker
        self.executor = executor
        self.notifier = notifier
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.job_factory = job_factory or (lambda name, expr, cb: RecurringJob(name, expr, cb).start())

        self.jobs: Dict[int, Any] = {}
        self.is_running = False
        self._lock = threading.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Schedule every enabled profile. Calling start twice is a no-op."""
        with self._lock:
            if self.is_running:
                logger.info("Scheduler is already running")
                return
            self.is_running = True

        profiles = self.store.list_profiles(schedule_enabled=True)
        for profile in profiles:
            self.schedule_profile(profile)

        self.store.set_app_setting('scheduler_running', 'true')
        log_audit_event('SCHEDULER_STARTED', {
            'profiles': [p['id'] for p in profiles]
        }, trading_mode=self.trading_mode)
        logger.info(f"🕒 Scheduler started with {len(profiles)} scheduled profile(s)")

    def stop(self, wait: bool = True) -> None:
        """Cancel every job. In-flight scans finish before this returns (wait=True)."""
        with self._lock:
            if not self.is_running and not self.jobs:
                return
            jobs = list(self.jobs.values())
            self.jobs.clear()
            self.is_running = False

        for job in jobs:
            job.cancel(wait=wait)

        self.store.set_app_setting('scheduler_running', 'false')
        log_audit_event('SCHEDULER_STOPPED', {'cancelled_jobs': len(jobs)}, trading_mode=self.trading_mode)
        logger.info(f"Scheduler stopped ({len(jobs)} job(s) cancelled)")

    # =========================================================================
    # Job Registry
    # =========================================================================

    def schedule_profile(self, profile: Dict[str, Any]) -> None:
        """Install (or replace) the recurring job for one profile."""
        profile_id = profile['id']
        interval = profile.get('schedule_interval') or config.DEFAULT_SCHEDULE_INTERVAL_MINUTES
        expression = cadence_for_interval(interval)

        logger.info(
            f"Scheduling profile {profile_id} ({profile['name']}) with interval: {interval} minutes"
        )

        with self._lock:
            previous = self.jobs.pop(profile_id, None)
            self.jobs[profile_id] = self.job_factory(
                f"profile-{profile_id}",
                expression,
                lambda: self._execute_scheduled_scan(profile_id)
            )
        if previous is not None:
            previous.cancel(wait=False)

    def unschedule_profile(self, profile_id: int) -> bool:
        with self._lock:
            job = self.jobs.pop(profile_id, None)
        if job is None:
            return False
        job.cancel(wait=False)
        logger.info(f"Removed schedule for profile {profile_id}")
        return True

    def update_schedule(self, profile_id: int) -> None:
        """Bring one profile's job in line with its schedule_enabled flag."""
        profile = self.store.get_profile(profile_id)
        if profile is None:
            logger.warning(f"Profile {profile_id} not found; removing any schedule")
            self.unschedule_profile(profile_id)
            return

        if profile.get('schedule_enabled') and self.is_running:
            self.schedule_profile(profile)
        else:
            self.unschedule_profile(profile_id)

    # =========================================================================
    # Job Body
    # =========================================================================

    def _execute_scheduled_scan(self, profile_id: int) -> Optional[Dict[str, Any]]:
        profile = self.store.get_profile(profile_id)
        if profile is None:
            logger.warning(f"Scheduled profile {profile_id} no longer exists; skipping")
            return None

        try:
            if profile.get('schedule_market_hours_only') and not self.broker.is_market_open():
                logger.info(f"Skipping scan for profile {profile_id} - market is closed")
                log_audit_event('SCAN_SKIPPED', {
                    'profile_id': profile_id,
                    'reason': 'market_closed'
                }, trading_mode=self.trading_mode)
                return None

            logger.info(f"Executing scheduled scan for profile {profile_id} ({profile['name']})")
            results = self.scanner.run_scan(profile_id)
            matches = results.get('matches') or []

            if matches:
                self.notifier.notify(
                    'success',
                    'Scan Complete',
                    f'Found {len(matches)} match(es) for "{profile["name"]}"',
                    profile_id=profile_id
                )
                logger.info(f"Scan found {len(matches)} matches")

                if profile.get('auto_execute'):
                    results['executions'] = self._auto_execute(profile, matches)

            return results

        except Exception as e:
            logger.error(f"Error in scheduled scan for profile {profile_id}: {e}")
            log_audit_event('SCAN_FAILED', {
                'profile_id': profile_id,
                'error': str(e)
            }, outcome='ERROR', trading_mode=self.trading_mode)
            self.notifier.notify(
                'error',
                'Scan Error',
                f'Error scanning "{profile["name"]}": {e}',
                profile_id=profile_id
            )
            return None

    def _auto_execute(self, profile: Dict[str, Any], matches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Market-buy each priced match with the profile's per-trade budget."""
        budget = profile.get('max_transaction_amount')
        if not budget:
            budget = self.store.get_risk_settings()['max_transaction_amount']

        executions = []
        for match in matches:
            symbol = match['symbol']
            price = match.get('price')
            if not price:
                logger.info(f"Auto-execute: no price for {symbol}, skipping")
                continue

            quantity = math.floor(budget / price)
            if quantity < 1:
                logger.info(f"Auto-execute: ${budget:.2f} budget buys no shares of {symbol} @ ${price:.2f}")
                continue

            try:
                result = self.executor.execute(
                    profile['id'], symbol, quantity, OrderSide.BUY.value, OrderType.MARKET.value
                )
            except (AlpacaClientError, InvalidOrder) as e:
                logger.error(f"Auto-execute {symbol} failed: {e}")
                executions.append({'symbol': symbol, 'quantity': quantity, 'success': False, 'reason': str(e)})
                continue

            if result.rejected:
                logger.info(f"Auto-execute {symbol} rejected: {result.reason}")
            executions.append({'symbol': symbol, 'quantity': quantity, **result.to_dict()})

        return executions

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        with self._lock:
            scheduled = sorted(self.jobs)
        return {
            'is_running': self.is_running,
            'active_jobs': len(scheduled),
            'scheduled_profiles': scheduled
        }

    def next_run_times(self) -> List[Dict[str, Any]]:
        """Next fire time of every scheduled profile, soonest first."""
        with self._lock:
            jobs = dict(self.jobs)

        now = get_eastern_now()
        runs = []
        for profile_id, job in jobs.items():
            profile = self.store.get_profile(profile_id)
            if profile is None:
                continue
            interval = profile.get('schedule_interval') or config.DEFAULT_SCHEDULE_INTERVAL_MINUTES
            next_run = getattr(job, 'next_run', None) or next_fire_time(cadence_for_interval(interval), now)
            runs.append({
                'profile_id': profile_id,
                'profile_name': profile['name'],
                'interval': interval,
                'next_run': next_run.isoformat()
            })

        return sorted(runs, key=lambda r: r['next_run'])
