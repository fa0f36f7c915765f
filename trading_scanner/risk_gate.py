# trading_scanner/risk_gate.py
"""
Risk Gate

Pre-trade policy check for buy orders. Checks run in a fixed order and the
first failure wins:

    1. risk management enabled
    2. per-transaction maximum
    3. daily spend limit (today's DailyStat.total_spent)
    4. weekly spend limit (trailing 7 calendar days, today included)
    5. maximum concurrent positions, pending buys included (adding to a held
       symbol is exempt)
    6. duplicate-position policy (a held position or an unfilled buy)
    7. account buying power (best effort, skipped when the broker is unavailable)

Checks 1-6 read only the local store. Sells always pass: closing risk is not
opening risk.
"""

import logging
from typing import Any, Dict, Optional

from . import config
from .models import AlpacaClientError, OrderSide, RiskCheckResult
from .utils import window_start_date_str

logger = logging.getLogger(__name__)


def _fmt_limit(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


class RiskGate:
    """
    Evaluates proposed trades against the RiskSettings singleton.

    Callers that persist spend after a pass must wrap evaluate() and the write
    in one `store.transaction()` so concurrent evaluations cannot both admit
    past a limit.
    """

    def __init__(self, store, broker=None, trading_mode=None):
        self.store = store
        self.broker = broker
        self.trading_mode = config.resolve_trading_mode(trading_mode)

    def evaluate(
        self,
        symbol: str,
        side: str,
        estimated_cost: float,
        settings: Optional[Dict[str, Any]] = None,
        include_external: bool = True
    ) -> RiskCheckResult:
        """
        Run the ordered risk checks.

        Args:
            symbol: Ticker symbol
            side: 'buy' or 'sell'
            estimated_cost: price x quantity
            settings: RiskSettings record (loaded from the store when omitted)
            include_external: False runs only the local checks 1-6

        Returns:
            RiskCheckResult (passed, or rejected with the first failing reason)

        Raises:
            RiskSettingsUnavailable: buy evaluated without a usable RiskSettings record
        """
        if str(getattr(side, 'value', side)) != OrderSide.BUY.value:
            return RiskCheckResult.ok()

        if settings is None:
            settings = self.store.get_risk_settings()

        if not settings['enabled']:
            return RiskCheckResult.reject("Risk management is not configured")

        for check in (
            self._check_transaction_amount,
            self._check_daily_spend,
            self._check_weekly_spend,
            self._check_max_positions,
            self._check_duplicate_position
        ):
            result = check(symbol, estimated_cost, settings)
            if not result.passed:
                logger.info(f"🛑 Risk check failed for {symbol}: {result.reason}")
                return result

        if not include_external:
            return RiskCheckResult.ok()
        return self.check_buying_power(estimated_cost)

    # =========================================================================
    # Structural checks (local state only)
    # =========================================================================

    def _check_transaction_amount(self, symbol, estimated_cost, settings) -> RiskCheckResult:
        limit = settings['max_transaction_amount']
        if estimated_cost > limit:
            return RiskCheckResult.reject(
                f"Transaction amount (${estimated_cost:.2f}) exceeds maximum allowed (${_fmt_limit(limit)})"
            )
        return RiskCheckResult.ok()

    def _check_daily_spend(self, symbol, estimated_cost, settings) -> RiskCheckResult:
        today_spent = self.store.get_daily_stat(trading_mode=self.trading_mode)['total_spent']
        limit = settings['daily_spend_limit']
        if today_spent + estimated_cost > limit:
            return RiskCheckResult.reject(
                f"Would exceed daily spend limit. Today: ${today_spent:.2f}, Limit: ${_fmt_limit(limit)}"
            )
        return RiskCheckResult.ok()

    def _check_weekly_spend(self, symbol, estimated_cost, settings) -> RiskCheckResult:
        since = window_start_date_str(config.SPEND_WINDOW_DAYS - 1)
        week_spent = self.store.sum_spent_since(since, trading_mode=self.trading_mode)
        limit = settings['weekly_spend_limit']
        if week_spent + estimated_cost > limit:
            return RiskCheckResult.reject(
                f"Would exceed weekly spend limit. This week: ${week_spent:.2f}, Limit: ${_fmt_limit(limit)}"
            )
        return RiskCheckResult.ok()

    def _pending_buy_symbols(self) -> set:
        """Symbols with a buy order the broker has not filled yet."""
        return {
            t['symbol'] for t in self.store.list_pending_trades(self.trading_mode)
            if t['side'] == OrderSide.BUY.value
        }

    def _check_max_positions(self, symbol, estimated_cost, settings) -> RiskCheckResult:
        max_positions = settings['max_positions']
        committed = {p['symbol'] for p in self.store.list_positions(self.trading_mode)}
        committed |= self._pending_buy_symbols()
        if len(committed) >= max_positions and symbol not in committed:
            return RiskCheckResult.reject(
                f"Maximum positions ({max_positions}) already held. "
                f"Close a position before opening a new one."
            )
        return RiskCheckResult.ok()

    def _check_duplicate_position(self, symbol, estimated_cost, settings) -> RiskCheckResult:
        if settings['allow_duplicate_positions']:
            return RiskCheckResult.ok()
        if self.store.get_position(symbol, self.trading_mode) is not None:
            return RiskCheckResult.reject(
                f"Already have a position in {symbol}. Duplicate positions are not allowed."
            )
        if symbol in self._pending_buy_symbols():
            return RiskCheckResult.reject(
                f"Already have a pending buy order for {symbol}. Duplicate positions are not allowed."
            )
        return RiskCheckResult.ok()

    # =========================================================================
    # External check
    # =========================================================================

    def check_buying_power(self, estimated_cost: float) -> RiskCheckResult:
        if self.broker is None:
            return RiskCheckResult.ok()

        try:
            buying_power = self.broker.get_buying_power()
        except AlpacaClientError as e:
            # The broker remains the final authority on funds
            logger.warning(f"Buying power check skipped: {e}")
            return RiskCheckResult.ok()

        if estimated_cost > buying_power:
            return RiskCheckResult.reject(
                f"Insufficient buying power. Available: ${buying_power:.2f}, "
                f"Required: ${estimated_cost:.2f}"
            )
        return RiskCheckResult.ok()
