# trading_scanner/scanner.py
"""
Profile Scanner

Runs a screening profile's price/volume criteria over its watchlist using
the broker's quote and latest daily bar. Fundamental and technical filters
belong to the data providers and are not evaluated here.

Profile parameters understood:
    symbols          explicit watchlist (defaults to DEFAULT_WATCHLIST)
    priceMin/Max     last price bounds
    volumeMin/Max    latest daily volume bounds
    changePercentMin/Max   day change (close vs open) bounds
"""

import time
import logging
from typing import Any, Dict, List

from . import config
from .models import AlpacaClientError, AssetType, ProfileNotFound, RateLimitExceeded
from .utils import calculate_day_change_pct, get_eastern_now, log_audit_event

logger = logging.getLogger(__name__)


DEFAULT_WATCHLIST = [
    # Tech
    'AAPL', 'MSFT', 'GOOGL', 'AMZN', 'NVDA', 'META', 'TSLA', 'NFLX', 'ADBE', 'CRM',
    'ORCL', 'CSCO', 'INTC', 'AMD', 'QCOM',
    # Financials
    'JPM', 'BAC', 'WFC', 'GS', 'MS', 'C', 'V', 'MA', 'PYPL', 'AXP',
    # Healthcare
    'JNJ', 'UNH', 'PFE', 'ABBV', 'LLY', 'TMO', 'ABT', 'DHR', 'MRK', 'BMY',
    # Consumer
    'WMT', 'HD', 'MCD', 'NKE', 'SBUX', 'TGT', 'LOW', 'COST', 'PG', 'KO', 'PEP', 'PM',
    # Industrials
    'BA', 'CAT', 'GE', 'UPS', 'HON', 'MMM', 'LMT', 'RTX',
    # Energy
    'XOM', 'CVX', 'COP', 'SLB', 'EOG'
]

_BOUNDS = (
    ('priceMin', 'price', min),
    ('priceMax', 'price', max),
    ('volumeMin', 'volume', min),
    ('volumeMax', 'volume', max),
    ('changePercentMin', 'day_change_percent', min),
    ('changePercentMax', 'day_change_percent', max)
)


def matches_criteria(data: Dict[str, Any], parameters: Dict[str, Any]) -> bool:
    """True when `data` satisfies every bound present in `parameters`."""
    for param, field, kind in _BOUNDS:
        bound = parameters.get(param)
        if bound is None:
            continue
        value = data.get(field)
        if value is None:
            return False
        if kind is min and value < bound:
            return False
        if kind is max and value > bound:
            return False
    return True


class ProfileScanner:
    """Evaluates screening profiles against live market data."""

    def __init__(self, store, broker, trading_mode=None):
        self.store = store
        self.broker = broker
        self.trading_mode = config.resolve_trading_mode(trading_mode)

    def get_stock_data(self, symbol: str) -> Dict[str, Any]:
        """Quote plus latest bar (AlpacaClientError when the symbol has no bars)."""
        bar = self.broker.get_latest_bar(symbol)
        price = self.broker.get_quote(symbol) or bar['close']
        day_change = bar['close'] - bar['open']
        return {
            'symbol': symbol,
            'price': price,
            'volume': bar['volume'],
            'open': bar['open'],
            'high': bar['high'],
            'low': bar['low'],
            'close': bar['close'],
            'day_change': day_change,
            'day_change_percent': calculate_day_change_pct(bar['open'], bar['close'])
        }

    def scan_stocks(self, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
        symbols = parameters.get('symbols') or DEFAULT_WATCHLIST
        matches = []

        logger.info(f"Scanning {len(symbols)} symbols with criteria: {sorted(parameters)}")

        for symbol in symbols:
            try:
                data = self.get_stock_data(symbol)
            except RateLimitExceeded:
                raise
            except AlpacaClientError as e:
                logger.warning(f"Skipping {symbol} - no data available: {e}")
                continue

            if matches_criteria(data, parameters):
                matches.append({'symbol': symbol, 'price': data['price'], 'data': data})
                logger.info(f"✓ Match found: {symbol}")

        return matches

    def run_scan(self, profile_id: int) -> Dict[str, Any]:
        """
        Run one profile and record scans_run/matches_found.

        Raises:
            ProfileNotFound: unknown profile id
        """
        started = time.monotonic()
        profile = self.store.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound(f"Profile {profile_id} not found")

        logger.info(f"Running scan for profile: {profile['name']}")

        if profile['asset_type'] == AssetType.STOCK.value:
            matches = self.scan_stocks(profile.get('parameters') or {})
        else:
            logger.info(f"{profile['asset_type']} screening is not supported; no matches")
            matches = []

        self.store.increment_daily_stat(
            trading_mode=self.trading_mode, scans_run=1, matches_found=len(matches)
        )

        execution_ms = int((time.monotonic() - started) * 1000)
        log_audit_event('SCAN_COMPLETED', {
            'profile_id': profile_id,
            'matches': [m['symbol'] for m in matches],
            'execution_time_ms': execution_ms
        }, trading_mode=self.trading_mode)

        logger.info(f"Scan completed: {len(matches)} matches found in {execution_ms}ms")
        return {
            'success': True,
            'matches': matches,
            'execution_time_ms': execution_ms,
            'timestamp': get_eastern_now().isoformat()
        }
