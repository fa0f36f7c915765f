# trading_scanner/position_monitor.py
"""
Position Monitor

Polls open positions on a fixed interval and liquidates any position whose
unrealized P/L crosses its stop-loss or take-profit threshold.

Per position and tick:
    OPEN -> (threshold crossed) -> LIQUIDATING -> CLOSED
    OPEN -> OPEN                   (price refresh only)

A failed price lookup skips that position for the tick; a failed auto-sell
is logged and reported but never stops the loop. Pending order fills are
synced at the start of every tick so new positions enter monitoring promptly.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .models import AlpacaClientError, CloseReason
from .utils import calculate_pnl_pct, format_currency, format_percentage, log_audit_event

logger = logging.getLogger(__name__)


def check_thresholds(
    avg_cost: float,
    current_price: float,
    stop_loss_percent: Optional[float],
    take_profit_percent: Optional[float]
) -> Tuple[float, Optional[str]]:
    """
    Evaluate a position's exit thresholds.

    An unset (None or 0) threshold never fires.

    Returns:
        Tuple of (pl_percent, close reason or None)
    """
    pl_percent = calculate_pnl_pct(avg_cost, current_price)

    if stop_loss_percent and pl_percent <= -abs(stop_loss_percent):
        return pl_percent, CloseReason.STOP_LOSS.value
    if take_profit_percent and pl_percent >= take_profit_percent:
        return pl_percent, CloseReason.TAKE_PROFIT.value
    return pl_percent, None


class PositionMonitor:
    """
    Background stop-loss/take-profit watcher for one trading mode.

    Responsibilities:
    - Re-price every open position each tick
    - Liquidate through OrderExecutor when a threshold trips
    - Manual closes and threshold updates from the UI
    """

    def __init__(self, store, broker, executor, notifier, trading_mode=None, check_interval: Optional[int] = None):
        self.store = store
        self.broker = broker
        self.executor = executor
        self.notifier = notifier
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.check_interval = check_interval or config.MONITOR_INTERVAL_SECONDS
        if self.check_interval < config.MIN_MONITOR_INTERVAL_SECONDS:
            raise ValueError(
                f"Check interval must be at least {config.MIN_MONITOR_INTERVAL_SECONDS} seconds"
            )

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self.last_tick: Optional[Dict[str, Any]] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start monitoring; the first tick runs immediately."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.info("Position monitor is already running")
                return

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name=f"position-monitor-{self.trading_mode.value}",
                daemon=True
            )
            self._thread.start()
            logger.info(f"Position monitor started (checking every {self.check_interval}s)")

    def stop(self, wait: bool = True) -> None:
        """Stop further ticks. An in-flight tick runs to completion."""
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._thread = None

        if wait and thread is not threading.current_thread():
            thread.join()
        logger.info("Position monitor stopped")

    def set_check_interval(self, seconds: int) -> None:
        """Change the polling interval (restarts the loop when running)."""
        if seconds < config.MIN_MONITOR_INTERVAL_SECONDS:
            raise ValueError(
                f"Check interval must be at least {config.MIN_MONITOR_INTERVAL_SECONDS} seconds"
            )

        self.check_interval = seconds
        if self.is_running:
            self.stop()
            self.start()
        logger.info(f"Position monitor check interval updated to {seconds}s")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Position monitor tick failed: {e}")
            stop_event.wait(self.check_interval)

    # =========================================================================
    # Monitoring Cycle
    # =========================================================================

    def tick(self) -> Dict[str, Any]:
        """
        Run one monitoring pass over all open positions.

        Returns:
            Tick results dictionary
        """
        started = datetime.now()
        results = {
            'timestamp': started.isoformat(),
            'positions_checked': 0,
            'closed': [],
            'skipped': [],
            'errors': []
        }

        try:
            results['order_sync'] = self.executor.sync_pending_orders()
        except Exception as e:
            logger.exception(f"Order sync failed: {e}")
            results['errors'].append({'status': 'error', 'error': f"Order sync failed: {e}"})

        positions = self.store.list_positions(self.trading_mode)
        if positions:
            logger.info(f"Checking {len(positions)} active position(s)...")

        for position in positions:
            results['positions_checked'] += 1
            try:
                outcome = self.check_position(position)
            except Exception as e:
                logger.exception(f"Error checking position for {position['symbol']}: {e}")
                outcome = {'symbol': position['symbol'], 'status': 'error', 'error': str(e)}

            if outcome['status'] == 'closed':
                results['closed'].append(outcome)
            elif outcome['status'] == 'skipped':
                results['skipped'].append(position['symbol'])
            elif outcome['status'] == 'error':
                results['errors'].append(outcome)

        results['duration_seconds'] = (datetime.now() - started).total_seconds()
        self.last_tick = results
        return results

    def check_position(self, position: Dict[str, Any]) -> Dict[str, Any]:
        """Re-price one position and liquidate it when a threshold trips."""
        symbol = position['symbol']

        try:
            current_price = self.broker.get_current_price(symbol)
        except AlpacaClientError as e:
            logger.warning(f"No price for {symbol}, skipping this tick: {e}")
            return {'symbol': symbol, 'status': 'skipped'}

        pl_percent, reason = check_thresholds(
            position['avg_cost'],
            current_price,
            position.get('stop_loss_percent'),
            position.get('take_profit_percent')
        )

        if reason is None:
            quantity = position['quantity']
            self.store.update_position(symbol, {
                'current_price': current_price,
                'current_value': current_price * quantity,
                'unrealized_pl': (current_price - position['avg_cost']) * quantity,
                'unrealized_pl_percent': pl_percent
            }, self.trading_mode)
            if position.get('stop_loss_percent') or position.get('take_profit_percent'):
                logger.info(f"📊 {symbol}: {format_percentage(pl_percent)} P/L @ ${current_price:.2f}")
            return {'symbol': symbol, 'status': 'open', 'pl_percent': pl_percent}

        if reason == CloseReason.STOP_LOSS.value:
            logger.warning(
                f"🛑 STOP-LOSS TRIGGERED for {symbol}: {pl_percent:.2f}% "
                f"(threshold: -{abs(position['stop_loss_percent'])}%)"
            )
        else:
            logger.info(
                f"✅ TAKE-PROFIT TRIGGERED for {symbol}: {pl_percent:.2f}% "
                f"(threshold: +{position['take_profit_percent']}%)"
            )

        return self._auto_sell(position, current_price, reason)

    def _auto_sell(self, position: Dict[str, Any], current_price: float, reason: str) -> Dict[str, Any]:
        symbol = position['symbol']

        try:
            closed = self.executor.liquidate(position, reason, current_price)
        except Exception as e:
            logger.error(f"Failed to execute auto-sell for {symbol}: {e}")
            log_audit_event('AUTO_SELL_FAILED', {
                'symbol': symbol,
                'reason': reason,
                'price': current_price,
                'error': str(e)
            }, outcome='ERROR', trading_mode=self.trading_mode)
            self.notifier.notify(
                'error',
                'Auto-Sell Failed',
                f"Failed to execute automatic sell order for {symbol}: {e}",
                symbol=symbol
            )
            return {'symbol': symbol, 'status': 'error', 'reason': reason, 'error': str(e)}

        is_stop = reason == CloseReason.STOP_LOSS.value
        self.notifier.notify(
            'warning' if is_stop else 'success',
            'Stop-Loss Executed' if is_stop else 'Take-Profit Executed',
            f"Automatically sold {closed['quantity']} shares of {symbol} at ${closed['exit_price']:.2f}. "
            f"Realized P/L: {format_currency(closed['realized_pl'])} "
            f"({format_percentage(closed['realized_pl_percent'])})",
            symbol=symbol
        )

        logger.info(
            f"✓ Position closed: {symbol} - P/L: {format_currency(closed['realized_pl'])} "
            f"({closed['realized_pl_percent']:.2f}%)"
        )
        return {'symbol': symbol, 'status': 'closed', 'reason': reason, 'closed_position': closed}

    # =========================================================================
    # Manual Actions
    # =========================================================================

    def close_position(self, symbol: str) -> Dict[str, Any]:
        """
        Close a whole position at market on user request.

        Raises:
            KeyError: no open position in `symbol`
            AlpacaClientError: the broker refused the close
        """
        position = self.store.get_position(symbol, self.trading_mode)
        if position is None:
            raise KeyError(f"No open position in {symbol}")

        try:
            current_price = self.broker.get_current_price(symbol)
        except AlpacaClientError as e:
            logger.warning(f"No price for {symbol}; recording close at last known price: {e}")
            current_price = position.get('current_price') or position['avg_cost']

        order = self.broker.close_position(symbol)
        closed = self.executor.record_position_close(
            position, current_price, CloseReason.MANUAL.value, order_id=order.get('order_id')
        )

        self.notifier.notify(
            'info',
            'Position Closed',
            f"{symbol} position closed: manual. Realized P/L: {format_currency(closed['realized_pl'])}",
            symbol=symbol
        )
        return closed

    def update_position(
        self,
        symbol: str,
        stop_loss_percent: Any = ...,
        take_profit_percent: Any = ...
    ) -> Dict[str, Any]:
        """
        Change a position's thresholds. Pass None to disable one; omit to keep it.

        Raises:
            KeyError: no open position in `symbol`
            ValueError: negative threshold
        """
        updates = {}
        for name, value in (('stop_loss_percent', stop_loss_percent), ('take_profit_percent', take_profit_percent)):
            if value is ...:
                continue
            if value is not None:
                value = float(value)
                if value < 0:
                    raise ValueError(f"{name} must be a positive percentage or None")
            updates[name] = value

        updated = self.store.update_position(symbol, updates, self.trading_mode)
        if updated is None:
            raise KeyError(f"No open position in {symbol}")
        logger.info(f"{symbol} thresholds updated: {updates}")
        return updated

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        positions: List[Dict[str, Any]] = self.store.list_positions(self.trading_mode)
        return {
            'running': self.is_running,
            'check_interval': self.check_interval,
            'trading_mode': self.trading_mode.value,
            'positions': len(positions),
            'last_tick': self.last_tick['timestamp'] if self.last_tick else None
        }
