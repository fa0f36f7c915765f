# trading_scanner/backtest.py
"""
Profile backtesting with trading metrics

Replays a screening profile over a date range in fixed steps (default weekly):
- Exits open simulated positions at the stop-loss (entry x 0.95) or
  take-profit (entry x 1.15) level
- Opens at most one new position per step from the first match in the
  candidate universe, sized to floor(position_size / price) shares
- Force-closes whatever is still open at the end date

Two explicit price modes, reported in every result:
- historical: daily closes from yfinance, matched with the profile criteria
- simulated: seeded random prices and a fixed signal hit rate

Metrics: win rate, average win/loss, profit factor, Sharpe ratio, max drawdown.
Backtests never touch the rate budget, risk gate or broker.
"""

import math
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from . import config
from .market_data import HistoricalPriceProvider
from .scanner import matches_criteria
from .utils import log_audit_event

logger = logging.getLogger(__name__)

MODES = ('historical', 'simulated')

# Days of history fetched before start_date so a weekend start still has a close
_HISTORY_LEAD_DAYS = 10


# =============================================================================
# Metrics
# =============================================================================

def _empty_metrics() -> Dict[str, float]:
    return {
        'total_trades': 0,
        'winning_trades': 0,
        'losing_trades': 0,
        'win_rate': 0.0,
        'total_profit_loss': 0.0,
        'return_percent': 0.0,
        'total_wins': 0.0,
        'total_losses': 0.0,
        'avg_win': 0.0,
        'avg_loss': 0.0,
        'profit_factor': 0.0,
        'sharpe_ratio': 0.0,
        'max_drawdown': 0.0,
        'avg_holding_days': 0.0
    }


def calculate_max_drawdown(profit_losses: List[float], initial_capital: float) -> float:
    """
    Largest peak-to-trough decline (percent) of cumulative capital across the
    ordered trades. The running peak starts at the initial capital.
    """
    if not profit_losses:
        return 0.0

    capital = initial_capital + np.cumsum(profit_losses)
    peaks = np.maximum.accumulate(np.concatenate(([initial_capital], capital)))[1:]
    drawdowns = np.where(peaks > 0, (peaks - capital) / peaks * 100, 0.0)
    return max(0.0, float(drawdowns.max()))


def calculate_metrics(
    trades: List[Dict[str, Any]],
    initial_capital: float,
    final_capital: float,
    annualize: bool = False,
    step_days: int = config.BACKTEST_STEP_DAYS
) -> Dict[str, float]:
    """
    Aggregate performance metrics for a list of closed backtest trades.

    Args:
        trades: Trades with profit_loss, profit_loss_percent, holding_days
        initial_capital: Starting capital
        final_capital: Capital after all positions closed
        annualize: Scale Sharpe by sqrt(252 / step_days) (historical prices only)
        step_days: Days between scans

    Returns:
        Metrics dict; all zeros when there are no trades
    """
    if not trades:
        return _empty_metrics()

    pl = np.array([t['profit_loss'] for t in trades], dtype=float)
    returns = np.array([t['profit_loss_percent'] for t in trades], dtype=float)

    wins = pl[pl > 0]
    losses = pl[pl <= 0]
    total_wins = float(wins.sum())
    total_losses = float(abs(losses.sum()))

    if total_losses > 0:
        profit_factor = total_wins / total_losses
    elif total_wins > 0:
        profit_factor = config.PROFIT_FACTOR_SENTINEL
    else:
        profit_factor = 0.0

    # Population standard deviation of per-trade percent returns
    std = float(returns.std())
    sharpe = float(returns.mean()) / std if std > 0 else 0.0
    if annualize:
        sharpe *= math.sqrt(config.TRADING_DAYS_PER_YEAR / step_days)

    return {
        'total_trades': len(trades),
        'winning_trades': int(len(wins)),
        'losing_trades': int(len(losses)),
        'win_rate': len(wins) / len(trades) * 100,
        'total_profit_loss': float(pl.sum()),
        'return_percent': (final_capital - initial_capital) / initial_capital * 100,
        'total_wins': total_wins,
        'total_losses': total_losses,
        'avg_win': total_wins / len(wins) if len(wins) else 0.0,
        'avg_loss': total_losses / len(losses) if len(losses) else 0.0,
        'profit_factor': profit_factor,
        'sharpe_ratio': sharpe,
        'max_drawdown': calculate_max_drawdown(pl.tolist(), initial_capital),
        'avg_holding_days': float(np.mean([t['holding_days'] for t in trades]))
    }


def _to_date(value: Union[str, date]) -> date:
    return pd.Timestamp(value).date()


# =============================================================================
# Engine
# =============================================================================

class BacktestEngine:
    """
    Offline replay of a profile's entry/exit logic.

    Args:
        price_provider: HistoricalPriceProvider (created on first historical run)
        seed: Seed for simulated prices and signals
        mode: Default mode; falls back to config.BACKTEST_MODE
    """

    def __init__(
        self,
        price_provider: Optional[HistoricalPriceProvider] = None,
        seed: Optional[int] = None,
        mode: Optional[str] = None,
        step_days: int = config.BACKTEST_STEP_DAYS,
        universe: Optional[List[str]] = None
    ):
        self.price_provider = price_provider
        self.seed = seed
        self.mode = mode or config.BACKTEST_MODE
        self.step_days = step_days
        self.universe = universe or list(config.BACKTEST_CANDIDATE_UNIVERSE)

    def run(
        self,
        profile: Dict[str, Any],
        start_date: Union[str, date],
        end_date: Union[str, date],
        initial_capital: float = config.BACKTEST_INITIAL_CAPITAL,
        position_size: float = config.BACKTEST_POSITION_SIZE,
        mode: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run one backtest.

        Raises:
            ValueError: bad mode, reversed dates, or non-positive capital/size
        """
        mode = (mode or self.mode).lower()
        if mode not in MODES:
            raise ValueError(f"Unknown backtest mode: {mode} (must be one of {', '.join(MODES)})")

        start, end = _to_date(start_date), _to_date(end_date)
        if end < start:
            raise ValueError("End date must be on or after start date")
        if initial_capital <= 0 or position_size <= 0:
            raise ValueError("Initial capital and position size must be positive")

        if mode == 'historical' and self.price_provider is None:
            self.price_provider = HistoricalPriceProvider()

        logger.info(f"Running {mode} backtest for \"{profile['name']}\"")
        logger.info(f"Period: {start} to {end}")
        logger.info(f"Initial Capital: ${initial_capital:,.2f}, Position Size: ${position_size:,.2f}")

        run = _BacktestRun(self, profile, start, end, mode)
        capital = initial_capital
        open_positions: List[Dict[str, Any]] = []
        trades: List[Dict[str, Any]] = []

        current = start
        while current <= end:
            open_positions, proceeds = run.update_positions(open_positions, current, trades)
            capital += proceeds

            if capital >= position_size and len(open_positions) < config.BACKTEST_MAX_OPEN_POSITIONS:
                held = {p['symbol'] for p in open_positions}
                matches = [m for m in run.scan(current) if m['symbol'] not in held]
                if matches:
                    signal = matches[0]
                    quantity = math.floor(position_size / signal['price'])
                    if quantity > 0:
                        position = run.open_position(signal, quantity, current)
                        open_positions.append(position)
                        capital -= position['cost']
                        logger.info(f"  ✓ BUY {quantity} {signal['symbol']} @ ${signal['price']:.2f}")

            current += timedelta(days=self.step_days)

        for position in open_positions:
            exit_price = run.final_price(position)
            trades.append(run.close(position, exit_price, end, 'end_of_period'))
            capital += exit_price * position['quantity']

        metrics = calculate_metrics(
            trades, initial_capital, capital,
            annualize=(mode == 'historical'),
            step_days=self.step_days
        )

        logger.info("=== Backtest Results ===")
        logger.info(f"Total Trades: {metrics['total_trades']}")
        logger.info(f"Win Rate: {metrics['win_rate']:.2f}%")
        logger.info(f"Total P/L: ${metrics['total_profit_loss']:.2f}")
        logger.info(f"Return: {metrics['return_percent']:.2f}%")
        logger.info(f"Sharpe Ratio: {metrics['sharpe_ratio']:.2f}")
        logger.info(f"Max Drawdown: {metrics['max_drawdown']:.2f}%")

        log_audit_event('BACKTEST_COMPLETED', {
            'profile': profile['name'],
            'mode': mode,
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'total_trades': metrics['total_trades'],
            'return_percent': round(metrics['return_percent'], 4)
        })

        return {
            'profile': profile['name'],
            'mode': mode,
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'initial_capital': initial_capital,
            'final_capital': capital,
            'trades': trades,
            'metrics': metrics
        }


class _BacktestRun:
    """Price source and position bookkeeping for a single run."""

    def __init__(self, engine: BacktestEngine, profile: Dict[str, Any], start: date, end: date, mode: str):
        self.engine = engine
        self.parameters = profile.get('parameters') or {}
        self.start = start
        self.end = end
        self.mode = mode
        self.fetch_start = start - timedelta(days=_HISTORY_LEAD_DAYS)
        self.rng = np.random.default_rng(engine.seed)

    # -- prices ---------------------------------------------------------------

    def price_at(self, position: Dict[str, Any], day: date) -> Optional[float]:
        if self.mode == 'simulated':
            return position['entry_price'] * (1 + self.rng.uniform(-0.15, 0.15))
        return self.engine.price_provider.price_on_or_before(
            position['symbol'], day, self.fetch_start, self.end
        )

    def final_price(self, position: Dict[str, Any]) -> float:
        if self.mode == 'simulated':
            return position['entry_price'] * (1 + self.rng.uniform(-0.1, 0.1))
        price = self.engine.price_provider.price_on_or_before(
            position['symbol'], self.end, self.fetch_start, self.end
        )
        return price if price is not None else position['entry_price']

    def scan(self, day: date) -> List[Dict[str, Any]]:
        if self.mode == 'simulated':
            if self.rng.random() >= config.BACKTEST_SIGNAL_HIT_RATE:
                return []
            symbol = str(self.rng.choice(self.engine.universe))
            return [{'symbol': symbol, 'price': 100 + self.rng.random() * 300}]

        matches = []
        for symbol in self.engine.universe:
            data = self.engine.price_provider.snapshot(symbol, day, self.fetch_start, self.end)
            if data and matches_criteria(data, self.parameters):
                matches.append(data)
        return matches

    # -- positions ------------------------------------------------------------

    @staticmethod
    def open_position(signal: Dict[str, Any], quantity: int, day: date) -> Dict[str, Any]:
        price = signal['price']
        return {
            'symbol': signal['symbol'],
            'entry_date': day,
            'entry_price': price,
            'quantity': quantity,
            'cost': quantity * price,
            'stop_loss': price * config.BACKTEST_STOP_LOSS_FACTOR,
            'take_profit': price * config.BACKTEST_TAKE_PROFIT_FACTOR
        }

    @staticmethod
    def close(
        position: Dict[str, Any],
        exit_price: float,
        day: date,
        reason: str,
        pl_percent: Optional[float] = None
    ) -> Dict[str, Any]:
        entry = position['entry_price']
        if pl_percent is None:
            pl_percent = (exit_price - entry) / entry * 100
        return {
            'symbol': position['symbol'],
            'entry_date': position['entry_date'].isoformat(),
            'exit_date': day.isoformat(),
            'entry_price': entry,
            'exit_price': exit_price,
            'quantity': position['quantity'],
            'profit_loss': (exit_price - entry) * position['quantity'],
            'profit_loss_percent': pl_percent,
            'reason': reason,
            'holding_days': (day - position['entry_date']).days
        }

    def update_positions(self, positions: List[Dict[str, Any]], day: date, trades: List[Dict[str, Any]]):
        """Close positions crossing a threshold. Returns (still_open, proceeds)."""
        remaining = []
        proceeds = 0.0

        for position in positions:
            price = self.price_at(position, day)
            if price is None:
                remaining.append(position)
                continue

            if price <= position['stop_loss']:
                exit_price, reason = position['stop_loss'], 'stop_loss'
                pl_percent = round((config.BACKTEST_STOP_LOSS_FACTOR - 1) * 100, 6)
            elif price >= position['take_profit']:
                exit_price, reason = position['take_profit'], 'take_profit'
                pl_percent = round((config.BACKTEST_TAKE_PROFIT_FACTOR - 1) * 100, 6)
            else:
                remaining.append(position)
                continue

            trade = self.close(position, exit_price, day, reason, pl_percent)
            trades.append(trade)
            proceeds += exit_price * position['quantity']

            icon = '🛑 STOP-LOSS' if reason == 'stop_loss' else '✅ TAKE-PROFIT'
            logger.info(f"  {icon}: {position['symbol']} @ ${exit_price:.2f} ({trade['profit_loss']:+.2f})")

        return remaining, proceeds
