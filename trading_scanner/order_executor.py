# trading_scanner/order_executor.py
"""
Order Executor

Handles the order lifecycle:
- Parameter validation (InvalidOrder, nothing persisted)
- Price estimate and risk gate evaluation
- Spend reservation in the same store transaction as the gate
- Broker submission and trade history records
- Fill sync for pending orders (opens, averages and closes positions)
- The liquidation path used by the position monitor

Policy rejections are expected outcomes and come back as an ExecutionResult.
Broker failures are recorded and then re-raised to the caller.
"""

import logging
from typing import Any, Dict, List, Optional

from . import config
from .models import (
    AlpacaClientError,
    CloseReason,
    ExecutionResult,
    InvalidOrder,
    OrderSide,
    OrderType,
    RiskSettingsUnavailable,
    TradeStatus
)
from .risk_gate import RiskGate
from .utils import (
    calculate_holding_days,
    calculate_pnl_pct,
    log_audit_event,
    now_iso,
    validate_price,
    validate_quantity,
    validate_ticker
)

logger = logging.getLogger(__name__)


# Broker order status -> terminal TradeRecord status
BROKER_STATUS_MAP = {
    'filled': TradeStatus.FILLED.value,
    'canceled': TradeStatus.CANCELLED.value,
    'cancelled': TradeStatus.CANCELLED.value,
    'expired': TradeStatus.CANCELLED.value,
    'rejected': TradeStatus.REJECTED.value
}


def validate_order_params(
    symbol: Any,
    quantity: Any,
    side: Any,
    order_type: Any,
    limit_price: Any = None,
    stop_price: Any = None,
    trail_percent: Any = None
) -> None:
    """
    Validate order parameters.

    Raises:
        InvalidOrder: on the first invalid parameter
    """
    is_valid, _ = validate_ticker(symbol)
    if not is_valid:
        raise InvalidOrder("Invalid symbol")

    is_valid, message = validate_quantity(quantity)
    if not is_valid:
        raise InvalidOrder(message)

    if side not in (OrderSide.BUY.value, OrderSide.SELL.value):
        raise InvalidOrder('Side must be "buy" or "sell"')

    if order_type not in {t.value for t in OrderType}:
        raise InvalidOrder("Invalid order type")

    if order_type == OrderType.LIMIT.value and not validate_price(limit_price)[0]:
        raise InvalidOrder("Limit orders require a valid limit price")

    if order_type == OrderType.STOP.value and not validate_price(stop_price)[0]:
        raise InvalidOrder("Stop orders require a valid stop price")

    if order_type == OrderType.STOP_LIMIT.value and not (
        validate_price(limit_price)[0] and validate_price(stop_price)[0]
    ):
        raise InvalidOrder("Stop-limit orders require both limit and stop prices")

    if order_type == OrderType.TRAILING_STOP.value and not validate_price(trail_percent)[0]:
        raise InvalidOrder("Trailing stop orders require a valid trail percent")


class OrderExecutor:
    """
    Risk-gated order submission for one trading mode.
    """

    def __init__(self, store, broker, notifier, risk_gate: Optional[RiskGate] = None, trading_mode=None):
        self.store = store
        self.broker = broker
        self.notifier = notifier
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.risk_gate = risk_gate or RiskGate(store, broker, self.trading_mode)

    # =========================================================================
    # Order Execution
    # =========================================================================

    def estimate_price(self, symbol: str, limit_price: Optional[float] = None) -> float:
        """Limit price when given, else the live quote (latest bar close when no quote)."""
        if limit_price:
            return float(limit_price)
        return float(self.broker.get_current_price(symbol))

    def execute(
        self,
        profile_id: Optional[int],
        symbol: str,
        quantity: int,
        side: str,
        order_type: str = 'market',
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        trail_percent: Optional[float] = None
    ) -> ExecutionResult:
        """
        Validate, risk-check and submit an order.

        Returns:
            ExecutionResult: success with the broker order, or a risk rejection

        Raises:
            InvalidOrder: bad parameters (nothing persisted, broker untouched)
            RiskSettingsUnavailable: no usable RiskSettings (raised before any broker call)
            AlpacaClientError: price lookup or submission failed (recorded as rejected first)
        """
        symbol = symbol.strip().upper() if isinstance(symbol, str) else symbol
        side = str(getattr(side, 'value', side)).lower() if side is not None else side
        order_type = str(getattr(order_type, 'value', order_type)).lower() if order_type is not None else order_type

        validate_order_params(symbol, quantity, side, order_type, limit_price, stop_price, trail_percent)
        quantity = int(quantity)

        order_params = {
            'profile_id': profile_id,
            'symbol': symbol,
            'side': side,
            'quantity': quantity,
            'order_type': order_type,
            'limit_price': limit_price,
            'stop_price': stop_price,
            'trail_percent': trail_percent
        }

        settings = self.store.get_risk_settings()

        try:
            price = self.estimate_price(symbol, limit_price)
        except AlpacaClientError as e:
            self._record_failure(order_params, e)
            raise

        estimated_cost = price * quantity
        spend = estimated_cost if side == OrderSide.BUY.value else 0.0

        # Gate read and spend reservation form one atomic unit
        with self.store.transaction():
            check = self.risk_gate.evaluate(symbol, side, estimated_cost, settings, include_external=False)
            if check.passed:
                reservation = self.store.increment_daily_stat(
                    trading_mode=self.trading_mode, orders_placed=1, total_spent=spend
                )
            else:
                return self._record_rejection(order_params, check.reason, estimated_cost)

        if side == OrderSide.BUY.value:
            check = self.risk_gate.check_buying_power(estimated_cost)
            if not check.passed:
                self._release_reservation(reservation['date'], spend)
                return self._record_rejection(order_params, check.reason, estimated_cost)

        try:
            order = self.broker.submit_order(
                symbol=symbol,
                qty=quantity,
                side=side,
                order_type=order_type,
                limit_price=limit_price,
                stop_price=stop_price,
                trail_percent=trail_percent
            )
        except AlpacaClientError as e:
            self._release_reservation(reservation['date'], spend)
            self._record_failure(order_params, e)
            raise

        trade = self.store.append_trade(
            dict(
                order_params,
                status=TradeStatus.PENDING.value,
                order_id=order['id'],
                estimated_cost=estimated_cost,
                trade_date=reservation['date']
            ),
            self.trading_mode
        )

        log_audit_event('ORDER_SUBMITTED', {
            'symbol': symbol,
            'side': side,
            'qty': quantity,
            'order_type': order_type,
            'limit_price': limit_price,
            'estimated_cost': round(estimated_cost, 2),
            'order_id': order['id'],
            'profile_id': profile_id
        }, trading_mode=self.trading_mode)

        self.notifier.notify(
            'success',
            'Order Submitted',
            f"{side.upper()} order for {quantity} shares of {symbol} submitted",
            profile_id=profile_id,
            symbol=symbol
        )

        logger.info(f"✅ Trade executed successfully: {side} {quantity} {symbol} (~${estimated_cost:,.2f})")
        return ExecutionResult(success=True, order=order, estimated_cost=estimated_cost, trade=trade)

    def _record_rejection(self, order_params: Dict[str, Any], reason: str, estimated_cost: float) -> ExecutionResult:
        trade = self.store.append_trade(
            dict(order_params, status=TradeStatus.REJECTED.value, rejection_reason=reason, estimated_cost=estimated_cost),
            self.trading_mode
        )
        self.store.increment_daily_stat(trading_mode=self.trading_mode, orders_rejected=1)

        log_audit_event('RISK_REJECTED', {
            'symbol': order_params['symbol'],
            'side': order_params['side'],
            'qty': order_params['quantity'],
            'estimated_cost': round(estimated_cost, 2),
            'reason': reason,
            'profile_id': order_params['profile_id']
        }, outcome='REJECTED', trading_mode=self.trading_mode)

        return ExecutionResult(
            success=False,
            rejected=True,
            reason=reason,
            estimated_cost=estimated_cost,
            trade=trade
        )

    def _record_failure(self, order_params: Dict[str, Any], error: Exception) -> None:
        symbol = order_params['symbol']
        self.store.append_trade(
            dict(order_params, status=TradeStatus.REJECTED.value, rejection_reason=str(error)),
            self.trading_mode
        )
        self.store.increment_daily_stat(trading_mode=self.trading_mode, orders_rejected=1)

        log_audit_event('ORDER_FAILED', {
            'symbol': symbol,
            'side': order_params['side'],
            'qty': order_params['quantity'],
            'error': str(error),
            'profile_id': order_params['profile_id']
        }, outcome='FAILURE', trading_mode=self.trading_mode)

        self.notifier.notify(
            'error',
            'Trade Error',
            f"Failed to execute {order_params['side']} order for {symbol}: {error}",
            symbol=symbol
        )

    def _release_reservation(self, date_str: str, spend: float) -> None:
        self.store.increment_daily_stat(
            date_str, trading_mode=self.trading_mode, orders_placed=-1, total_spent=-spend
        )

    # =========================================================================
    # Fill Sync
    # =========================================================================

    def sync_pending_orders(self) -> Dict[str, Any]:
        """
        Move pending trades to their terminal status from the broker's view.

        A filled buy opens or averages into a Position; a filled sell reduces
        or closes it. Lookup failures leave the trade pending for the next pass.
        """
        summary = {'checked': 0, 'filled': 0, 'cancelled': 0, 'rejected': 0, 'errors': []}

        for trade in self.store.list_pending_trades(self.trading_mode):
            if not trade.get('order_id'):
                continue
            summary['checked'] += 1

            try:
                order = self.broker.get_order(trade['order_id'])
            except AlpacaClientError as e:
                logger.warning(f"Could not refresh order {trade['order_id']} ({trade['symbol']}): {e}")
                summary['errors'].append(f"{trade['symbol']}: {e}")
                continue

            if not order:
                continue

            new_status = BROKER_STATUS_MAP.get(order.get('status'))
            if new_status is None:
                continue

            # Cancelled/expired after some shares traded: settle the filled part
            if new_status == TradeStatus.FILLED.value or (order.get('filled_qty') or 0) > 0:
                try:
                    self._apply_fill(trade, order)
                except AlpacaClientError as e:
                    logger.warning(f"No fill price for {trade['symbol']} order {trade['order_id']}: {e}")
                    summary['errors'].append(f"{trade['symbol']}: {e}")
                    continue
                summary['filled'] += 1
            else:
                self._apply_cancel(trade, order, new_status)
                summary[new_status] += 1

        if summary['checked']:
            logger.info(
                f"Order sync: {summary['checked']} pending, {summary['filled']} filled, "
                f"{summary['cancelled']} cancelled, {summary['rejected']} rejected"
            )
        return summary

    def _apply_fill(self, trade: Dict[str, Any], order: Dict[str, Any]) -> None:
        fill_price = order.get('filled_avg_price') or trade.get('limit_price')
        if not fill_price and trade.get('estimated_cost'):
            fill_price = trade['estimated_cost'] / trade['quantity']
        if not fill_price:
            fill_price = self.estimate_price(trade['symbol'])
        fill_price = float(fill_price)
        filled_qty = min(order.get('filled_qty') or trade['quantity'], trade['quantity'])
        filled_at = order.get('filled_at') or now_iso()
        partial = filled_qty < trade['quantity']

        with self.store.transaction():
            self.store.update_trade_status(
                trade['id'], TradeStatus.FILLED.value, filled_price=fill_price,
                filled_quantity=filled_qty, filled_at=filled_at
            )
            self.store.increment_daily_stat(trading_mode=self.trading_mode, orders_filled=1)

            if trade['side'] == OrderSide.BUY.value:
                estimate = float(trade.get('estimated_cost') or 0)
                if partial and estimate:
                    # Only the unfilled shares give their reserved spend back
                    unfilled = estimate * (1 - filled_qty / trade['quantity'])
                    self.store.increment_daily_stat(
                        trade.get('trade_date'), trading_mode=self.trading_mode, total_spent=-unfilled
                    )
                self._open_or_average(trade, filled_qty, fill_price)
            else:
                position = self.store.get_position(trade['symbol'], self.trading_mode)
                if position is not None:
                    self.record_position_close(
                        position, fill_price, CloseReason.MANUAL.value,
                        quantity=filled_qty, order_id=trade['order_id'], append_trade=False
                    )

        log_audit_event('ORDER_FILLED', {
            'symbol': trade['symbol'],
            'side': trade['side'],
            'qty': filled_qty,
            'requested_qty': trade['quantity'],
            'broker_status': order.get('status'),
            'fill_price': fill_price,
            'order_id': trade['order_id']
        }, trading_mode=self.trading_mode)

        if partial:
            logger.info(
                f"⚠️  Partial fill: {trade['side']} {filled_qty}/{trade['quantity']} {trade['symbol']} "
                f"@ ${fill_price:.2f} (order {order.get('status')})"
            )
        else:
            logger.info(f"✅ Order filled: {trade['side']} {filled_qty} {trade['symbol']} @ ${fill_price:.2f}")

    def _apply_cancel(self, trade: Dict[str, Any], order: Dict[str, Any], new_status: str) -> None:
        reason = f"Order {order.get('status')} by broker"
        with self.store.transaction():
            self.store.update_trade_status(trade['id'], new_status, rejection_reason=reason)
            if trade['side'] == OrderSide.BUY.value:
                # Unfilled buys give their reserved spend back
                estimate = float(trade.get('estimated_cost') or 0)
                if estimate:
                    self.store.increment_daily_stat(
                        trade.get('trade_date'), trading_mode=self.trading_mode, total_spent=-estimate
                    )

        log_audit_event('ORDER_CANCELLED', {
            'symbol': trade['symbol'],
            'order_id': trade['order_id'],
            'status': order.get('status')
        }, outcome='CANCELLED', trading_mode=self.trading_mode)

    def _open_or_average(self, trade: Dict[str, Any], quantity: int, price: float) -> Dict[str, Any]:
        symbol = trade['symbol']
        existing = self.store.get_position(symbol, self.trading_mode)

        if existing is not None:
            total_qty = existing['quantity'] + quantity
            avg_cost = (existing['avg_cost'] * existing['quantity'] + price * quantity) / total_qty
            return self.store.upsert_position(
                dict(existing, quantity=total_qty, avg_cost=avg_cost, **self._valuation(avg_cost, total_qty, price)),
                self.trading_mode
            )

        stop_loss, take_profit = self._default_thresholds()
        position = self.store.upsert_position({
            'symbol': symbol,
            'quantity': quantity,
            'avg_cost': price,
            'stop_loss_percent': stop_loss,
            'take_profit_percent': take_profit,
            'profile_id': trade.get('profile_id'),
            **self._valuation(price, quantity, price)
        }, self.trading_mode)
        self.store.increment_daily_stat(trading_mode=self.trading_mode, positions_opened=1)
        logger.info(f"Position opened: {symbol} x{quantity} @ ${price:.2f}")
        return position

    def _default_thresholds(self):
        try:
            settings = self.store.get_risk_settings()
        except RiskSettingsUnavailable as e:
            logger.warning(f"Using built-in stop-loss/take-profit defaults: {e}")
            settings = config.DEFAULT_RISK_SETTINGS
        return settings.get('stop_loss_default'), settings.get('take_profit_default')

    @staticmethod
    def _valuation(avg_cost: float, quantity: int, price: float) -> Dict[str, float]:
        return {
            'current_price': price,
            'current_value': price * quantity,
            'unrealized_pl': (price - avg_cost) * quantity,
            'unrealized_pl_percent': calculate_pnl_pct(avg_cost, price)
        }

    # =========================================================================
    # Liquidation
    # =========================================================================

    def liquidate(self, position: Dict[str, Any], reason: str, trigger_price: float) -> Dict[str, Any]:
        """
        Market-sell a whole position and record the round trip.

        Exempt from the risk gate. Works without RiskSettings.

        Raises:
            AlpacaClientError: the sell could not be submitted (position untouched)
        """
        order = self.broker.submit_order(
            symbol=position['symbol'],
            qty=position['quantity'],
            side=OrderSide.SELL.value,
            order_type=OrderType.MARKET.value
        )
        exit_price = float(order.get('filled_avg_price') or trigger_price)
        return self.record_position_close(position, exit_price, reason, order_id=order['id'])

    def record_position_close(
        self,
        position: Dict[str, Any],
        exit_price: float,
        reason: str,
        quantity: Optional[int] = None,
        order_id: Optional[str] = None,
        append_trade: bool = True
    ) -> Dict[str, Any]:
        """
        Record a (full or partial) close of `position` at `exit_price`.

        Writes the ClosedPosition, deletes or shrinks the Position, appends a
        filled sell trade and updates today's positions_closed/realized_pl.
        """
        reason = CloseReason(reason).value
        held = position['quantity']
        quantity = min(int(quantity or held), held)
        entry_price = position['avg_cost']
        closed_at = now_iso()
        realized_pl = (exit_price - entry_price) * quantity

        with self.store.transaction():
            closed = self.store.append_closed_position({
                'symbol': position['symbol'],
                'quantity': quantity,
                'entry_price': entry_price,
                'exit_price': exit_price,
                'realized_pl': realized_pl,
                'realized_pl_percent': calculate_pnl_pct(entry_price, exit_price),
                'holding_period_days': calculate_holding_days(position.get('opened_at')),
                'close_reason': reason,
                'opened_at': position.get('opened_at'),
                'closed_at': closed_at
            }, self.trading_mode)

            if quantity >= held:
                self.store.delete_position(position['symbol'], self.trading_mode)
                positions_closed = 1
            else:
                remaining = held - quantity
                self.store.update_position(
                    position['symbol'],
                    dict(quantity=remaining, **self._valuation(entry_price, remaining, exit_price)),
                    self.trading_mode
                )
                positions_closed = 0

            if append_trade:
                self.store.append_trade({
                    'profile_id': position.get('profile_id'),
                    'symbol': position['symbol'],
                    'side': OrderSide.SELL.value,
                    'quantity': quantity,
                    'order_type': OrderType.MARKET.value,
                    'filled_price': exit_price,
                    'status': TradeStatus.FILLED.value,
                    'order_id': order_id,
                    'filled_at': closed_at
                }, self.trading_mode)

            self.store.increment_daily_stat(
                trading_mode=self.trading_mode,
                positions_closed=positions_closed,
                realized_pl=realized_pl
            )

        log_audit_event('POSITION_CLOSED', {
            'symbol': position['symbol'],
            'qty': quantity,
            'entry_price': entry_price,
            'exit_price': exit_price,
            'realized_pl': round(realized_pl, 2),
            'reason': reason,
            'order_id': order_id
        }, trading_mode=self.trading_mode)

        return closed

    # =========================================================================
    # Queries
    # =========================================================================

    def get_trade_history(
        self,
        symbol: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.store.list_trades(self.trading_mode, symbol=symbol, status=status, limit=limit)
