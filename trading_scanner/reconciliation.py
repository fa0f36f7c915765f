# trading_scanner/reconciliation.py
"""
Broker Position Sync

Rebuilds the local position table for one trading mode from the broker's
view. Critical after:
- Manual trades in the Alpaca UI
- Corporate actions (splits, mergers)
- Restarts with unrecorded fills

Existing stop-loss/take-profit thresholds survive the rebuild; positions new
to the local table get the RiskSettings defaults.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .models import AlpacaClientError, RiskSettingsUnavailable
from .utils import calculate_pnl_pct, log_audit_event

logger = logging.getLogger(__name__)


class PositionDiscrepancy:
    """Represents a discrepancy between local and broker state."""

    MISSING_LOCAL = 'missing_local'      # Position in broker, not locally
    MISSING_BROKER = 'missing_broker'    # Position locally, not in broker
    QTY_MISMATCH = 'qty_mismatch'        # Quantities don't match

    def __init__(self, discrepancy_type: str, symbol: str, local_qty: int, broker_qty: int):
        self.type = discrepancy_type
        self.symbol = symbol
        self.local_qty = local_qty
        self.broker_qty = broker_qty
        self.detected_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'symbol': self.symbol,
            'local_qty': self.local_qty,
            'broker_qty': self.broker_qty,
            'detected_at': self.detected_at.isoformat()
        }

    def __str__(self) -> str:
        if self.type == self.MISSING_LOCAL:
            return f"{self.symbol}: Found at broker ({self.broker_qty} shares) but not locally"
        elif self.type == self.MISSING_BROKER:
            return f"{self.symbol}: Exists locally ({self.local_qty} shares) but not at broker"
        return f"{self.symbol}: Qty mismatch - Local: {self.local_qty}, Broker: {self.broker_qty}"


def find_discrepancies(
    local_positions: List[Dict[str, Any]],
    broker_positions: List[Dict[str, Any]]
) -> List[PositionDiscrepancy]:
    """Compare local and broker positions by symbol."""
    local_map = {p['symbol']: p for p in local_positions}
    broker_map = {p['symbol']: p for p in broker_positions}
    discrepancies = []

    for symbol in sorted(set(local_map) | set(broker_map)):
        local_pos = local_map.get(symbol)
        broker_pos = broker_map.get(symbol)

        if broker_pos and not local_pos:
            discrepancies.append(PositionDiscrepancy(
                PositionDiscrepancy.MISSING_LOCAL, symbol, 0, broker_pos['qty']
            ))
        elif local_pos and not broker_pos:
            discrepancies.append(PositionDiscrepancy(
                PositionDiscrepancy.MISSING_BROKER, symbol, local_pos['quantity'], 0
            ))
        elif local_pos['quantity'] != broker_pos['qty']:
            discrepancies.append(PositionDiscrepancy(
                PositionDiscrepancy.QTY_MISMATCH, symbol, local_pos['quantity'], broker_pos['qty']
            ))

    return discrepancies


class PositionSync:
    """
    Replaces local positions with the broker's, keeping user thresholds.
    """

    def __init__(self, store, broker, trading_mode=None):
        self.store = store
        self.broker = broker
        self.trading_mode = config.resolve_trading_mode(trading_mode)
        self.last_sync: Optional[datetime] = None

    def _default_thresholds(self) -> Tuple[Optional[float], Optional[float]]:
        try:
            settings = self.store.get_risk_settings()
        except RiskSettingsUnavailable:
            settings = config.DEFAULT_RISK_SETTINGS
        return settings['stop_loss_default'], settings['take_profit_default']

    def sync(self) -> Dict[str, Any]:
        """
        Rebuild local positions from the broker.

        Returns:
            Summary with synced count and the discrepancies found beforehand

        Raises:
            AlpacaClientError: broker positions could not be fetched (local state untouched)
        """
        logger.info("Starting position sync...")

        try:
            broker_positions = self.broker.get_positions()
        except AlpacaClientError as e:
            logger.error(f"Failed to fetch broker positions: {e}")
            log_audit_event('POSITIONS_SYNCED', {'error': str(e)}, outcome='ERROR', trading_mode=self.trading_mode)
            raise

        stop_loss_default, take_profit_default = self._default_thresholds()

        with self.store.transaction():
            local_positions = self.store.list_positions(self.trading_mode)
            discrepancies = find_discrepancies(local_positions, broker_positions)
            local_map = {p['symbol']: p for p in local_positions}

            for symbol in set(local_map) - {p['symbol'] for p in broker_positions}:
                self.store.delete_position(symbol, self.trading_mode)

            for pos in broker_positions:
                existing = local_map.get(pos['symbol'])
                avg_cost = pos['avg_entry_price']
                current_price = pos.get('current_price') or avg_cost
                record = {
                    'symbol': pos['symbol'],
                    'quantity': pos['qty'],
                    'avg_cost': avg_cost,
                    'current_price': current_price,
                    'current_value': pos.get('market_value') or current_price * pos['qty'],
                    'unrealized_pl': pos.get('unrealized_pl') or (current_price - avg_cost) * pos['qty'],
                    'unrealized_pl_percent': calculate_pnl_pct(avg_cost, current_price)
                }
                if existing is None:
                    record['stop_loss_percent'] = stop_loss_default
                    record['take_profit_percent'] = take_profit_default
                self.store.upsert_position(record, self.trading_mode)

        self.last_sync = datetime.now()

        if discrepancies:
            logger.warning(f"Position sync corrected {len(discrepancies)} discrepancies")
            for d in discrepancies:
                logger.warning(f"  - {d}")

        log_audit_event('POSITIONS_SYNCED', {
            'positions': len(broker_positions),
            'discrepancies': [d.to_dict() for d in discrepancies]
        }, trading_mode=self.trading_mode)

        logger.info(f"Synced {len(broker_positions)} positions")
        return {
            'synced': len(broker_positions),
            'discrepancies': [d.to_dict() for d in discrepancies],
            'timestamp': self.last_sync.isoformat()
        }
