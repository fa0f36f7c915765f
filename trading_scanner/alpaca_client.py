# trading_scanner/alpaca_client.py
"""
Alpaca API Client Wrapper

Broker collaborator for the automation core:
- Quotes and latest bars (market data API)
- Account info and market clock
- Order submission for every supported order type
- Position listing and full-position close

Every outbound call first passes RateBudget.acquire('alpaca'). Calls are not
retried; a failure surfaces once as AlpacaClientError and the caller records it.
"""

import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from alpaca.common.exceptions import APIError
from alpaca.data.enums import DataFeed
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockBarsRequest, StockLatestTradeRequest
from alpaca.data.timeframe import TimeFrame
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderSide, TimeInForce
from alpaca.trading.requests import (
    MarketOrderRequest,
    LimitOrderRequest,
    StopOrderRequest,
    StopLimitOrderRequest,
    TrailingStopOrderRequest
)

from . import config
from .config import TradingMode
from .models import AlpacaClientError, RateLimitExceeded, OrderType
from .rate_limiter import RateBudget

logger = logging.getLogger(__name__)

PROVIDER = 'alpaca'
BAR_LOOKBACK_DAYS = 10

__all__ = ['AlpacaBroker', 'AlpacaClientError', 'RateLimitExceeded', 'create_alpaca_client']


def _enum_value(value: Any) -> Optional[str]:
    """'OrderStatus.FILLED' / OrderStatus.FILLED / 'filled' -> 'filled'."""
    if value is None:
        return None
    value = getattr(value, 'value', value)
    return str(value).split('.')[-1].lower()


def _to_float(value: Any) -> Optional[float]:
    return float(value) if value not in (None, '') else None


class AlpacaBroker:
    """
    Rate-budgeted wrapper around the Alpaca trading and market data APIs.

    The trading mode is fixed per instance; construct a second broker to
    talk to the other account.
    """

    def __init__(
        self,
        trading_mode=None,
        rate_budget: Optional[RateBudget] = None,
        trading_client: Optional[TradingClient] = None,
        data_client: Optional[StockHistoricalDataClient] = None
    ):
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.rate_budget = rate_budget or RateBudget()

        if trading_client is None or data_client is None:
            creds = config.get_api_credentials(self.trading_mode)
            if not creds['api_key'] or not creds['secret_key']:
                mode = self.trading_mode.value.upper()
                raise AlpacaClientError(
                    f"Missing API credentials for {self.trading_mode.value} trading. "
                    f"Set ALPACA_{mode}_API_KEY and ALPACA_{mode}_SECRET_KEY environment variables."
                )
            paper = self.trading_mode == TradingMode.PAPER
            trading_client = trading_client or TradingClient(
                api_key=creds['api_key'],
                secret_key=creds['secret_key'],
                paper=paper
            )
            data_client = data_client or StockHistoricalDataClient(
                api_key=creds['api_key'],
                secret_key=creds['secret_key']
            )
            logger.info(f"Connected to Alpaca {'paper' if paper else 'LIVE'} trading API")

        self.client = trading_client
        self.data_client = data_client

    def _call(self, operation: Callable[[], Any], operation_name: str) -> Any:
        """Run one budgeted API call, wrapping failures in AlpacaClientError."""
        self.rate_budget.acquire(PROVIDER)
        try:
            return operation()
        except APIError as e:
            logger.error(f"{operation_name} failed: {e}")
            raise AlpacaClientError(f"{operation_name} failed: {e}") from e
        except Exception as e:
            logger.error(f"{operation_name} error: {e}")
            raise AlpacaClientError(f"{operation_name} failed: {e}") from e

    # =========================================================================
    # Account Operations
    # =========================================================================

    def get_account_info(self) -> Dict[str, Any]:
        account = self._call(lambda: self.client.get_account(), "Get account")
        return {
            'id': str(account.id),
            'cash': float(account.cash),
            'buying_power': float(account.buying_power),
            'portfolio_value': float(account.portfolio_value),
            'equity': float(account.equity),
            'last_equity': float(account.last_equity),
            'pattern_day_trader': account.pattern_day_trader,
            'trading_blocked': account.trading_blocked,
            'account_blocked': account.account_blocked,
            'status': _enum_value(account.status),
            'currency': account.currency,
            'daytrade_count': account.daytrade_count,
            'mode': self.trading_mode.value
        }

    def get_buying_power(self) -> float:
        return self.get_account_info()['buying_power']

    # =========================================================================
    # Market Status
    # =========================================================================

    def is_market_open(self) -> bool:
        """Check if the market is currently open (False when the clock is unavailable)."""
        try:
            clock = self._call(lambda: self.client.get_clock(), "Get market clock")
            return bool(clock.is_open)
        except AlpacaClientError as e:
            logger.error(f"Failed to get market clock: {e}")
            return False

    # =========================================================================
    # Market Data
    # =========================================================================

    def get_quote(self, symbol: str) -> Optional[float]:
        """
        Latest trade price for `symbol`.

        Returns None when no recent trade is available (e.g. markets closed);
        callers fall back to the latest bar close.
        """
        request = StockLatestTradeRequest(symbol_or_symbols=symbol)
        try:
            trades = self._call(
                lambda: self.data_client.get_stock_latest_trade(request),
                f"Get quote {symbol}"
            )
        except RateLimitExceeded:
            raise
        except AlpacaClientError:
            logger.info(f"No recent trade data for {symbol} (market may be closed)")
            return None

        trade = trades.get(symbol) if trades else None
        if trade is None or not trade.price:
            return None
        return float(trade.price)

    def get_latest_bar(self, symbol: str) -> Dict[str, Any]:
        """
        Most recent daily OHLCV bar.

        Falls back to the free IEX feed when the account has no SIP
        subscription (HTTP 403).

        Raises:
            AlpacaClientError: no bar data for the symbol
        """
        start = datetime.now() - timedelta(days=BAR_LOOKBACK_DAYS)

        def fetch(feed=None):
            request = StockBarsRequest(
                symbol_or_symbols=symbol,
                timeframe=TimeFrame.Day,
                start=start,
                feed=feed
            )
            return self._call(lambda: self.data_client.get_stock_bars(request), f"Get bars {symbol}")

        try:
            bars = fetch()
        except AlpacaClientError as e:
            if isinstance(e, RateLimitExceeded) or '403' not in str(e):
                raise
            logger.info(f"SIP feed unavailable for {symbol}; using IEX")
            bars = fetch(DataFeed.IEX)

        series = bars.data.get(symbol, []) if bars is not None else []
        if not series:
            raise AlpacaClientError(f"No bar data found for {symbol}")

        latest = series[-1]
        return {
            'symbol': symbol,
            'open': float(latest.open),
            'high': float(latest.high),
            'low': float(latest.low),
            'close': float(latest.close),
            'volume': float(latest.volume),
            'timestamp': latest.timestamp
        }

    def get_current_price(self, symbol: str) -> float:
        """Quote price, falling back to the latest bar close."""
        price = self.get_quote(symbol)
        if price is not None:
            return price
        return self.get_latest_bar(symbol)['close']

    # =========================================================================
    # Position Operations
    # =========================================================================

    def get_positions(self) -> List[Dict[str, Any]]:
        positions = self._call(lambda: self.client.get_all_positions(), "Get all positions")

        result = []
        for pos in positions:
            result.append({
                'symbol': pos.symbol,
                'qty': int(float(pos.qty)),
                'side': _enum_value(pos.side),
                'market_value': _to_float(pos.market_value),
                'cost_basis': _to_float(pos.cost_basis),
                'unrealized_pl': _to_float(pos.unrealized_pl),
                'unrealized_plpc': _to_float(pos.unrealized_plpc),
                'current_price': _to_float(pos.current_price),
                'avg_entry_price': float(pos.avg_entry_price)
            })
        return result

    def close_position(self, symbol: str) -> Dict[str, Any]:
        """Close an entire position at market price."""
        logger.info(f"Closing position: {symbol}")
        order = self._call(lambda: self.client.close_position(symbol), f"Close position {symbol}")
        return {
            'order_id': str(order.id),
            'client_order_id': order.client_order_id,
            'symbol': order.symbol,
            'status': _enum_value(order.status)
        }

    # =========================================================================
    # Order Operations
    # =========================================================================

    def submit_order(
        self,
        symbol: str,
        qty: int,
        side: str,
        order_type: str,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        trail_percent: Optional[float] = None,
        time_in_force: str = 'day',
        client_order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Submit an order of any supported type.

        Args:
            symbol: Ticker symbol
            qty: Number of shares
            side: 'buy' or 'sell'
            order_type: market, limit, stop, stop_limit or trailing_stop
            limit_price: Required for limit and stop_limit
            stop_price: Required for stop and stop_limit
            trail_percent: Required for trailing_stop
            time_in_force: 'day' or 'gtc'
            client_order_id: Idempotency key (generated when omitted)

        Returns:
            Order response dictionary
        """
        common = {
            'symbol': symbol,
            'qty': qty,
            'side': OrderSide.BUY if side == 'buy' else OrderSide.SELL,
            'time_in_force': TimeInForce.GTC if time_in_force.lower() == 'gtc' else TimeInForce.DAY,
            'client_order_id': client_order_id or f"ts-{uuid.uuid4().hex[:24]}"
        }

        order_type = OrderType(order_type)
        if order_type == OrderType.MARKET:
            order_data = MarketOrderRequest(**common)
        elif order_type == OrderType.LIMIT:
            order_data = LimitOrderRequest(limit_price=round(limit_price, 2), **common)
        elif order_type == OrderType.STOP:
            order_data = StopOrderRequest(stop_price=round(stop_price, 2), **common)
        elif order_type == OrderType.STOP_LIMIT:
            order_data = StopLimitOrderRequest(
                stop_price=round(stop_price, 2),
                limit_price=round(limit_price, 2),
                **common
            )
        else:
            order_data = TrailingStopOrderRequest(trail_percent=trail_percent, **common)

        logger.info(f"Submitting {order_type.value.upper()} {side.upper()}: {symbol} x{qty}")

        order = self._call(
            lambda: self.client.submit_order(order_data),
            f"Submit {order_type.value} {side} {symbol}"
        )
        return self._format_order_response(order)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Get order by ID (None when the broker does not know it)."""
        try:
            order = self._call(lambda: self.client.get_order_by_id(order_id), f"Get order {order_id}")
        except AlpacaClientError as e:
            if '404' in str(e) or 'not found' in str(e).lower():
                return None
            raise
        return self._format_order_response(order)

    def _format_order_response(self, order) -> Dict[str, Any]:
        """Format order object to dictionary."""
        return {
            'id': str(order.id),
            'order_id': str(order.id),
            'client_order_id': order.client_order_id,
            'symbol': order.symbol,
            'qty': int(float(order.qty)) if order.qty else 0,
            'filled_qty': int(float(order.filled_qty)) if order.filled_qty else 0,
            'side': _enum_value(order.side),
            'type': _enum_value(order.type),
            'status': _enum_value(order.status),
            'limit_price': _to_float(order.limit_price),
            'stop_price': _to_float(order.stop_price),
            'filled_avg_price': _to_float(order.filled_avg_price),
            'submitted_at': order.submitted_at,
            'filled_at': order.filled_at,
            'time_in_force': _enum_value(order.time_in_force)
        }


def create_alpaca_client(trading_mode=None, rate_budget: Optional[RateBudget] = None) -> AlpacaBroker:
    """
    Factory function to create an Alpaca broker for the given mode.

    Returns:
        Configured AlpacaBroker instance
    """
    return AlpacaBroker(trading_mode=trading_mode, rate_budget=rate_budget)


if __name__ == '__main__':
    try:
        broker = create_alpaca_client()
        account = broker.get_account_info()
        print("Connected successfully!")
        print(f"Portfolio Value: ${account['portfolio_value']:,.2f}")
        print(f"Buying Power: ${account['buying_power']:,.2f}")
        print(f"Market Open: {broker.is_market_open()}")
        print(f"Positions: {len(broker.get_positions())}")
    except AlpacaClientError as e:
        print(f"Connection failed: {e}")
