# trading_scanner/service.py
"""
Trading Service

Single entry point for the UI/automation layer. Wires every component for one
trading mode and exposes request/response operations:

- scan, execute_trade, trade history
- positions: list, update thresholds, close, broker sync
- position monitor and scheduler start/stop/status
- rate-limit status/update (persisted to app settings)
- risk settings, daily stats, notifications, audit trail
- backtest run
"""

import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from . import config
from .alerts import create_notifier
from .alpaca_client import AlpacaBroker
from .backtest import BacktestEngine
from .models import ProfileNotFound
from .order_executor import OrderExecutor
from .position_monitor import PositionMonitor
from .rate_limiter import RateBudget
from .reconciliation import PositionSync
from .risk_gate import RiskGate
from .scanner import ProfileScanner
from .scheduler import Scheduler
from .storage import TradingStore
from .utils import log_audit_event, read_recent_audit_events, trading_date_str

logger = logging.getLogger(__name__)

RATE_LIMITS_SETTING = 'rate_limits'
_UNSET = object()


class TradingService:
    """
    Owns the store, broker and background loops for one trading mode.

    Collaborators may be injected (tests, alternative brokers); anything not
    supplied is built from config.
    """

    def __init__(
        self,
        trading_mode=None,
        store: Optional[TradingStore] = None,
        broker=None,
        notifier=None,
        scanner=None,
        backtest_engine: Optional[BacktestEngine] = None,
        job_factory=None
    ):
        self.trading_mode = config.resolve_trading_mode(trading_mode)

        self.store = store or TradingStore()
        self.store.initialize()

        self.rate_budget = RateBudget(self._load_rate_limits())
        self.broker = broker or AlpacaBroker(self.trading_mode, rate_budget=self.rate_budget)
        self.notifier = notifier or create_notifier(self.store, self.trading_mode)

        self.risk_gate = RiskGate(self.store, self.broker, self.trading_mode)
        self.executor = OrderExecutor(
            self.store, self.broker, self.notifier, self.risk_gate, self.trading_mode
        )
        self.monitor = PositionMonitor(
            self.store, self.broker, self.executor, self.notifier, self.trading_mode,
            check_interval=int(self.store.get_app_setting(
                'monitor_interval_seconds', str(config.MONITOR_INTERVAL_SECONDS)
            ))
        )
        self.position_sync = PositionSync(self.store, self.broker, self.trading_mode)
        self.scanner = scanner or ProfileScanner(self.store, self.broker, self.trading_mode)
        self.scheduler = Scheduler(
            self.store, self.scanner, self.broker, self.executor, self.notifier,
            self.trading_mode, job_factory=job_factory
        )
        self.backtest_engine = backtest_engine or BacktestEngine()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, resume_scheduler: bool = True) -> None:
        """Start position monitoring, and the scheduler if it was left running."""
        self.start_monitor()
        if resume_scheduler and self.store.get_app_setting('scheduler_running') == 'true':
            self.scheduler.start()

    def shutdown(self) -> None:
        self.stop_monitor()
        was_running = self.scheduler.is_running
        self.scheduler.stop()
        if was_running:
            # Remember the scheduler for the next start()
            self.store.set_app_setting('scheduler_running', 'true')
        logger.info("Trading service stopped")

    # =========================================================================
    # Account
    # =========================================================================

    def get_account_info(self) -> Dict[str, Any]:
        return self.broker.get_account_info()

    # =========================================================================
    # Profiles
    # =========================================================================

    def list_profiles(self) -> List[Dict[str, Any]]:
        return self.store.list_profiles()

    def create_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        created = self.store.create_profile(profile)
        self.scheduler.update_schedule(created['id'])
        return created

    def update_profile(self, profile_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.store.update_profile(profile_id, updates)
        self.scheduler.update_schedule(profile_id)
        return updated

    def delete_profile(self, profile_id: int) -> bool:
        self.scheduler.unschedule_profile(profile_id)
        return self.store.delete_profile(profile_id)

    def _require_profile(self, profile_id: int) -> Dict[str, Any]:
        profile = self.store.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {profile_id} not found")
        return profile

    # =========================================================================
    # Scanning & Trading
    # =========================================================================

    def scan(self, profile_id: int) -> Dict[str, Any]:
        return self.scanner.run_scan(profile_id)

    def execute_trade(
        self,
        symbol: str,
        quantity: int,
        side: str,
        order_type: str = 'market',
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        trail_percent: Optional[float] = None,
        profile_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Risk-gated order placement.

        Raises:
            InvalidOrder: bad parameters (nothing persisted)
            RiskSettingsUnavailable: no usable risk settings
            AlpacaClientError: broker submission failed (recorded as rejected)
        """
        result = self.executor.execute(
            profile_id, symbol, quantity, side, order_type,
            limit_price=limit_price, stop_price=stop_price, trail_percent=trail_percent
        )
        return result.to_dict()

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.executor.get_trade_history(symbol=symbol, status=status, limit=limit)

    # =========================================================================
    # Positions
    # =========================================================================

    def list_positions(self) -> List[Dict[str, Any]]:
        return self.store.list_positions(self.trading_mode)

    def list_closed_positions(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.list_closed_positions(self.trading_mode, limit=limit)

    def update_position(
        self,
        symbol: str,
        stop_loss_percent: Any = ...,
        take_profit_percent: Any = ...
    ) -> Dict[str, Any]:
        return self.monitor.update_position(
            symbol, stop_loss_percent=stop_loss_percent, take_profit_percent=take_profit_percent
        )

    def close_position(self, symbol: str) -> Dict[str, Any]:
        return self.monitor.close_position(symbol)

    def sync_positions(self) -> Dict[str, Any]:
        return self.position_sync.sync()

    # =========================================================================
    # Position Monitor
    # =========================================================================

    def start_monitor(self) -> None:
        self.monitor.start()

    def stop_monitor(self) -> None:
        self.monitor.stop()

    def monitor_status(self) -> Dict[str, Any]:
        return self.monitor.get_status()

    def set_monitor_interval(self, seconds: int) -> Dict[str, Any]:
        self.monitor.set_check_interval(seconds)
        self.store.set_app_setting('monitor_interval_seconds', seconds)
        return self.monitor.get_status()

    # =========================================================================
    # Scheduler
    # =========================================================================

    def start_scheduler(self) -> Dict[str, Any]:
        self.scheduler.start()
        return self.scheduler.status()

    def stop_scheduler(self) -> Dict[str, Any]:
        self.scheduler.stop()
        return self.scheduler.status()

    def scheduler_status(self) -> Dict[str, Any]:
        status = self.scheduler.status()
        status['next_runs'] = self.scheduler.next_run_times()
        return status

    # =========================================================================
    # Rate Limits
    # =========================================================================

    def _load_rate_limits(self) -> Dict[str, Dict[str, Optional[int]]]:
        limits = {name: dict(limit) for name, limit in config.DEFAULT_RATE_LIMITS.items()}
        raw = self.store.get_app_setting(RATE_LIMITS_SETTING)
        if not raw:
            return limits
        try:
            saved = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable saved rate limits: {e}")
            return limits
        for provider, limit in saved.items():
            limits.setdefault(provider, {}).update(limit)
        return limits

    def get_rate_limit_status(self, provider: Optional[str] = None) -> Dict[str, Any]:
        if provider:
            return self.rate_budget.status(provider)
        return self.rate_budget.status_all()

    def update_rate_limits(
        self,
        provider: str,
        max_per_minute: Any = _UNSET,
        max_per_day: Any = _UNSET
    ) -> Dict[str, Any]:
        """Change a provider's maxima and persist them for the next start."""
        changes = {}
        if max_per_minute is not _UNSET:
            changes['max_per_minute'] = max_per_minute
        if max_per_day is not _UNSET:
            changes['max_per_day'] = max_per_day

        status = self.rate_budget.configure(provider, **changes)
        self.store.set_app_setting(RATE_LIMITS_SETTING, json.dumps(self.rate_budget.limits()))
        log_audit_event('SETTINGS_UPDATED', {
            'setting': RATE_LIMITS_SETTING,
            'provider': provider,
            **changes
        }, trading_mode=self.trading_mode)
        return status

    # =========================================================================
    # Risk Settings
    # =========================================================================

    def get_risk_settings(self) -> Dict[str, Any]:
        return self.store.get_risk_settings()

    def update_risk_settings(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.store.update_risk_settings(updates)
        log_audit_event('SETTINGS_UPDATED', {
            'setting': 'risk_settings',
            **updates
        }, trading_mode=self.trading_mode)
        return settings

    # =========================================================================
    # Stats & Notifications
    # =========================================================================

    def get_daily_stats(self, date_str: Optional[str] = None) -> Dict[str, Any]:
        return self.store.get_daily_stat(date_str or trading_date_str(), self.trading_mode)

    def list_notifications(self, unread_only: bool = False, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.list_notifications(unread_only=unread_only, limit=limit)

    def mark_notification_read(self, notification_id: int) -> bool:
        return self.store.mark_notification_read(notification_id)

    def get_audit_events(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent audit events for this service's trading mode."""
        events = read_recent_audit_events(event_type, limit=None)
        events = [e for e in events if e.get('trading_mode') == self.trading_mode.value]
        return events[:limit]

    # =========================================================================
    # Backtesting
    # =========================================================================

    def run_backtest(
        self,
        profile_id: int,
        start_date: Union[str, date],
        end_date: Union[str, date],
        initial_capital: Optional[float] = None,
        position_size: Optional[float] = None,
        mode: Optional[str] = None
    ) -> Dict[str, Any]:
        profile = self._require_profile(profile_id)
        return self.backtest_engine.run(
            profile,
            start_date,
            end_date,
            initial_capital=initial_capital or config.BACKTEST_INITIAL_CAPITAL,
            position_size=position_size or config.BACKTEST_POSITION_SIZE,
            mode=mode
        )
