"""RiskGate check order and reasons."""

import os
from datetime import timedelta

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import AlpacaClientError, RiskSettingsUnavailable
from trading_scanner.risk_gate import RiskGate
from trading_scanner.utils import get_eastern_now, trading_date_str

PAPER = TradingMode.PAPER


@pytest.fixture
def gate(store, broker):
    store.update_risk_settings({
        'max_transaction_amount': 10000.0,
        'daily_spend_limit': 20000.0,
        'weekly_spend_limit': 50000.0,
        'max_positions': 2
    })
    return RiskGate(store, broker, PAPER)


def open_position(store, symbol):
    store.upsert_position({'symbol': symbol, 'quantity': 10, 'avg_cost': 100.0}, PAPER)


def test_passes_within_all_limits(gate):
    assert gate.evaluate('AAPL', 'buy', 5000.0).passed


def test_sell_always_passes(gate, store):
    store.update_risk_settings({'enabled': False})
    assert gate.evaluate('AAPL', 'sell', 10 ** 9).passed


def test_disabled_rejects_first(gate, store):
    store.update_risk_settings({'enabled': False})
    result = gate.evaluate('AAPL', 'buy', 50000.0)
    assert not result.passed
    assert result.reason == "Risk management is not configured"


def test_transaction_amount_message(gate):
    result = gate.evaluate('AAPL', 'buy', 50000.0)
    assert not result.passed
    assert result.reason == "Transaction amount ($50000.00) exceeds maximum allowed ($10000)"


def test_daily_spend_limit(gate, store):
    store.increment_daily_stat(trading_mode=PAPER, total_spent=18000.0)
    result = gate.evaluate('AAPL', 'buy', 5000.0)
    assert not result.passed
    assert result.reason.startswith("Would exceed daily spend limit. Today: $18000.00")


def test_weekly_window_covers_last_seven_dates(gate, store):
    today = get_eastern_now()
    store.increment_daily_stat(trading_date_str(today - timedelta(days=6)), PAPER, total_spent=21000.0)
    store.increment_daily_stat(trading_date_str(today - timedelta(days=3)), PAPER, total_spent=21000.0)
    # Outside the window
    store.increment_daily_stat(trading_date_str(today - timedelta(days=7)), PAPER, total_spent=21000.0)

    result = gate.evaluate('AAPL', 'buy', 9000.0)
    assert not result.passed
    assert "weekly spend limit. This week: $42000.00" in result.reason

    assert gate.evaluate('AAPL', 'buy', 5000.0).passed


def test_weekly_spend_is_per_trading_mode(gate, store):
    store.increment_daily_stat(trading_mode='live', total_spent=49000.0)
    assert gate.evaluate('AAPL', 'buy', 5000.0).passed


def test_max_positions_exempts_held_symbol(gate, store):
    open_position(store, 'AAPL')
    open_position(store, 'MSFT')

    result = gate.evaluate('NVDA', 'buy', 1000.0)
    assert not result.passed
    assert result.reason.startswith("Maximum positions (2) already held")

    store.update_risk_settings({'allow_duplicate_positions': True})
    assert gate.evaluate('AAPL', 'buy', 1000.0).passed


def test_duplicate_position_rejected(gate, store):
    open_position(store, 'AAPL')
    result = gate.evaluate('AAPL', 'buy', 1000.0)
    assert not result.passed
    assert "Duplicate positions are not allowed" in result.reason


def pending_buy(store, symbol):
    store.append_trade({
        'symbol': symbol, 'side': 'buy', 'quantity': 10, 'order_type': 'market',
        'status': 'pending', 'order_id': f'order-{symbol}', 'estimated_cost': 1000.0
    }, PAPER)


def test_pending_buy_blocks_duplicate_before_fill(gate, store):
    pending_buy(store, 'AAPL')

    result = gate.evaluate('AAPL', 'buy', 1000.0)
    assert not result.passed
    assert result.reason == "Already have a pending buy order for AAPL. Duplicate positions are not allowed."

    store.update_risk_settings({'allow_duplicate_positions': True})
    assert gate.evaluate('AAPL', 'buy', 1000.0).passed


def test_pending_buys_count_toward_max_positions(gate, store):
    open_position(store, 'AAPL')
    pending_buy(store, 'MSFT')

    result = gate.evaluate('NVDA', 'buy', 1000.0)
    assert result.reason.startswith("Maximum positions (2) already held")


def test_earlier_check_wins_when_several_fail(gate, store):
    open_position(store, 'AAPL')
    open_position(store, 'MSFT')
    store.increment_daily_stat(trading_mode=PAPER, total_spent=19999.0)

    # Fails the transaction, daily and duplicate checks at once
    result = gate.evaluate('AAPL', 'buy', 15000.0)
    assert result.reason.startswith("Transaction amount")


def test_buying_power_checked_last(gate, broker):
    broker.get_buying_power.return_value = 500.0
    result = gate.evaluate('AAPL', 'buy', 1000.0)
    assert not result.passed
    assert result.reason.startswith("Insufficient buying power")


def test_buying_power_failure_is_skipped(gate, broker):
    broker.get_buying_power.side_effect = AlpacaClientError("timeout")
    assert gate.evaluate('AAPL', 'buy', 1000.0).passed


def test_local_checks_only_never_calls_broker(gate, broker):
    gate.evaluate('AAPL', 'buy', 1000.0, include_external=False)
    broker.get_buying_power.assert_not_called()


def test_missing_settings_raise(store, broker):
    os.remove(store._path('risk_settings'))
    with pytest.raises(RiskSettingsUnavailable):
        RiskGate(store, broker, PAPER).evaluate('AAPL', 'buy', 100.0)
