# trading_scanner/market_data.py
"""
Historical daily prices for backtesting, fetched with yfinance.

History is cached per (symbol, start, end) for the life of the provider so a
backtest over a fixed universe downloads each symbol once.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, Optional, Tuple

import pandas as pd
import yfinance as yf

from .utils import calculate_day_change_pct

logger = logging.getLogger(__name__)


def _column(df: pd.DataFrame, name: str) -> pd.Series:
    # yfinance returns MultiIndex columns (field, ticker) for single tickers too
    values = df[name]
    if isinstance(values, pd.DataFrame):
        values = values.iloc[:, 0]
    return values


class HistoricalPriceProvider:
    """Daily open/close/volume history keyed by symbol and date range."""

    def __init__(self, download=None):
        self._download = download or yf.download
        self._cache: Dict[Tuple[str, str, str], pd.DataFrame] = {}

    def get_history(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        """
        Daily 'open', 'close' and 'volume' from `start` through `end` (inclusive),
        indexed by date. Empty DataFrame when nothing could be downloaded.
        """
        key = (symbol, start.isoformat(), end.isoformat())
        if key in self._cache:
            return self._cache[key]

        history = pd.DataFrame(columns=['open', 'close', 'volume'], dtype=float)
        try:
            # yfinance treats `end` as exclusive
            df = self._download(
                symbol,
                start=start.strftime('%Y-%m-%d'),
                end=(end + timedelta(days=1)).strftime('%Y-%m-%d'),
                progress=False,
                auto_adjust=True
            )
            if df is not None and not df.empty:
                closes = _column(df, 'Close')
                history = pd.DataFrame({
                    'open': _column(df, 'Open') if 'Open' in df else closes,
                    'close': closes,
                    'volume': _column(df, 'Volume') if 'Volume' in df else float('nan')
                }).dropna(subset=['close'])
                history.index = pd.to_datetime(history.index).date
                history = history.astype(float)
        except Exception as e:
            logger.error(f"Error fetching {symbol}: {e}")

        self._cache[key] = history
        return history

    def get_close_series(self, symbol: str, start: date, end: date) -> pd.Series:
        return self.get_history(symbol, start, end)['close']

    def price_on_or_before(self, symbol: str, day: date, start: date, end: date) -> Optional[float]:
        """Last close at or before `day` within the cached range."""
        closes = self.get_close_series(symbol, start, end)
        eligible = closes.loc[[d <= day for d in closes.index]]
        if eligible.empty:
            return None
        return float(eligible.iloc[-1])

    def snapshot(self, symbol: str, day: date, start: date, end: date) -> Optional[Dict[str, Any]]:
        """
        Screening fields as of `day`: last close, its volume and the bar's
        change versus its open, as the live scanner computes it. None when no
        close exists at or before `day`.
        """
        history = self.get_history(symbol, start, end)
        eligible = history.loc[[d <= day for d in history.index]]
        if eligible.empty:
            return None

        last = eligible.iloc[-1]
        price = float(last['close'])
        change_percent = calculate_day_change_pct(float(last['open']), price)

        volume = last['volume']
        return {
            'symbol': symbol,
            'price': price,
            'volume': None if pd.isna(volume) else float(volume),
            'day_change_percent': change_percent
        }
