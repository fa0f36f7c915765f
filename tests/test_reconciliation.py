"""Broker position sync keeps user thresholds and reports discrepancies."""

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import AlpacaClientError
from trading_scanner.reconciliation import PositionSync, find_discrepancies

PAPER = TradingMode.PAPER


def broker_position(symbol, qty, avg=100.0, price=110.0):
    return {
        'symbol': symbol,
        'qty': qty,
        'avg_entry_price': avg,
        'current_price': price,
        'market_value': price * qty,
        'unrealized_pl': (price - avg) * qty
    }


def test_find_discrepancies():
    local = [{'symbol': 'AAPL', 'quantity': 10}, {'symbol': 'TSLA', 'quantity': 3}]
    remote = [broker_position('AAPL', 12), broker_position('NVDA', 1)]

    found = {d.symbol: d.type for d in find_discrepancies(local, remote)}

    assert found == {'AAPL': 'qty_mismatch', 'NVDA': 'missing_local', 'TSLA': 'missing_broker'}


def test_sync_replaces_positions_and_keeps_thresholds(store, broker):
    store.upsert_position({
        'symbol': 'AAPL', 'quantity': 10, 'avg_cost': 100.0,
        'stop_loss_percent': 2.5, 'take_profit_percent': None
    }, PAPER)
    store.upsert_position({'symbol': 'TSLA', 'quantity': 3, 'avg_cost': 200.0}, PAPER)
    broker.get_positions.return_value = [broker_position('AAPL', 12), broker_position('NVDA', 4)]

    summary = PositionSync(store, broker, PAPER).sync()

    assert summary['synced'] == 2
    assert len(summary['discrepancies']) == 3
    assert store.get_position('TSLA', PAPER) is None

    aapl = store.get_position('AAPL', PAPER)
    assert aapl['quantity'] == 12
    assert aapl['stop_loss_percent'] == 2.5
    assert aapl['take_profit_percent'] is None

    nvda = store.get_position('NVDA', PAPER)
    assert nvda['stop_loss_percent'] == 5.0
    assert nvda['take_profit_percent'] == 10.0
    assert nvda['unrealized_pl_percent'] == pytest.approx(10.0)


def test_sync_failure_leaves_local_state(store, broker):
    store.upsert_position({'symbol': 'AAPL', 'quantity': 10, 'avg_cost': 100.0}, PAPER)
    broker.get_positions.side_effect = AlpacaClientError("unauthorized")

    with pytest.raises(AlpacaClientError):
        PositionSync(store, broker, PAPER).sync()

    assert store.get_position('AAPL', PAPER)['quantity'] == 10


def test_sync_leaves_other_mode_alone(store, broker):
    store.upsert_position({'symbol': 'AAPL', 'quantity': 1, 'avg_cost': 1.0}, TradingMode.LIVE)
    broker.get_positions.return_value = []

    PositionSync(store, broker, PAPER).sync()

    assert store.get_position('AAPL', TradingMode.LIVE) is not None
