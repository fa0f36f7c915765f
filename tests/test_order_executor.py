"""OrderExecutor: validation, risk gating, spend reservation and fill sync."""

import os
import threading

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import AlpacaClientError, InvalidOrder, RiskSettingsUnavailable
from trading_scanner.order_executor import OrderExecutor, validate_order_params

PAPER = TradingMode.PAPER


@pytest.fixture
def executor(store, broker, notifier):
    store.update_risk_settings({'max_transaction_amount': 10000.0})
    return OrderExecutor(store, broker, notifier, trading_mode=PAPER)


# ─── Validation ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize('kwargs, message', [
    (dict(symbol='', quantity=1, side='buy', order_type='market'), "Invalid symbol"),
    (dict(symbol='AAPL', quantity=1, side='hold', order_type='market'), 'Side must be "buy" or "sell"'),
    (dict(symbol='AAPL', quantity=1, side='buy', order_type='iceberg'), "Invalid order type"),
    (dict(symbol='AAPL', quantity=1, side='buy', order_type='limit'), "Limit orders require a valid limit price"),
    (dict(symbol='AAPL', quantity=1, side='buy', order_type='stop', stop_price=0), "Stop orders require a valid stop price"),
    (dict(symbol='AAPL', quantity=1, side='buy', order_type='stop_limit', limit_price=10),
     "Stop-limit orders require both limit and stop prices"),
])
def test_validation_messages(kwargs, message):
    with pytest.raises(InvalidOrder, match=message):
        validate_order_params(**kwargs)


@pytest.mark.parametrize('quantity', [0, -5, 1.5, None])
def test_invalid_quantity_never_persists_or_calls_broker(executor, store, broker, quantity):
    with pytest.raises(InvalidOrder):
        executor.execute(None, 'AAPL', quantity, 'buy')

    assert store.list_trades(PAPER) == []
    broker.get_current_price.assert_not_called()
    broker.submit_order.assert_not_called()


# ─── Risk rejection ──────────────────────────────────────────────────────────

def test_oversized_buy_is_rejected_and_recorded(executor, store, broker):
    result = executor.execute(1, 'AAPL', 500, 'buy')   # 500 x $100 = $50,000

    assert not result.success
    assert result.rejected
    assert result.reason == "Transaction amount ($50000.00) exceeds maximum allowed ($10000)"
    broker.submit_order.assert_not_called()

    trades = store.list_trades(PAPER)
    assert len(trades) == 1
    assert trades[0]['status'] == 'rejected'
    assert trades[0]['rejection_reason'] == result.reason

    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['orders_rejected'] == 1
    assert stat['orders_placed'] == 0
    assert stat['total_spent'] == 0


def test_missing_risk_settings_block_before_broker(executor, store, broker):
    os.remove(store._path('risk_settings'))

    with pytest.raises(RiskSettingsUnavailable):
        executor.execute(None, 'AAPL', 1, 'buy')

    broker.get_current_price.assert_not_called()
    broker.submit_order.assert_not_called()


# ─── Submission ──────────────────────────────────────────────────────────────

def test_successful_buy_records_pending_trade(executor, store, broker, notifier):
    result = executor.execute(7, 'aapl', 10, 'buy')

    assert result.success
    assert result.estimated_cost == 1000.0
    broker.submit_order.assert_called_once()
    assert broker.submit_order.call_args.kwargs['symbol'] == 'AAPL'

    trade = store.list_trades(PAPER)[0]
    assert trade['status'] == 'pending'
    assert trade['order_id'] == 'order-1'
    assert trade['profile_id'] == 7

    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['orders_placed'] == 1
    assert stat['total_spent'] == 1000.0

    notifier.notify.assert_called_once()
    assert notifier.notify.call_args.args[:2] == ('success', 'Order Submitted')


def test_limit_price_used_for_estimate(executor, broker):
    result = executor.execute(None, 'AAPL', 10, 'buy', 'limit', limit_price=50.0)

    assert result.estimated_cost == 500.0
    broker.get_current_price.assert_not_called()


def test_sell_skips_spend_limits(executor, store):
    result = executor.execute(None, 'AAPL', 500, 'sell')

    assert result.success
    assert store.get_daily_stat(trading_mode=PAPER)['total_spent'] == 0


def test_broker_failure_is_recorded_and_raised(executor, store, broker, notifier):
    broker.submit_order.side_effect = AlpacaClientError("insufficient qty")

    with pytest.raises(AlpacaClientError):
        executor.execute(None, 'AAPL', 10, 'buy')

    trade = store.list_trades(PAPER)[0]
    assert trade['status'] == 'rejected'
    assert trade['rejection_reason'] == "insufficient qty"

    # Reservation released
    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['orders_placed'] == 0
    assert stat['total_spent'] == 0
    assert stat['orders_rejected'] == 1

    assert notifier.notify.call_args.args[:2] == ('error', 'Trade Error')


def test_reserved_spend_counts_toward_next_evaluation(executor, store):
    store.update_risk_settings({'daily_spend_limit': 1500.0})

    assert executor.execute(None, 'AAPL', 10, 'buy').success
    second = executor.execute(None, 'MSFT', 10, 'buy')

    assert second.rejected
    assert second.reason.startswith("Would exceed daily spend limit. Today: $1000.00")


def test_concurrent_buys_cannot_both_pass_limit(executor, store):
    store.update_risk_settings({'daily_spend_limit': 1500.0})
    barrier = threading.Barrier(2)
    results = []

    def buy(symbol):
        barrier.wait()
        results.append(executor.execute(None, symbol, 10, 'buy'))

    threads = [threading.Thread(target=buy, args=(s,)) for s in ('AAPL', 'MSFT')]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.success for r in results) == [False, True]
    assert store.get_daily_stat(trading_mode=PAPER)['total_spent'] == 1000.0


def test_repeat_buy_before_fill_sync_is_rejected(executor, store, broker):
    assert executor.execute(None, 'AAPL', 10, 'buy').success

    second = executor.execute(None, 'AAPL', 10, 'buy')

    assert second.rejected
    assert "pending buy order for AAPL" in second.reason
    assert broker.submit_order.call_count == 1


def test_buying_power_rejection_releases_reservation(executor, store, broker):
    broker.get_buying_power.return_value = 10.0

    result = executor.execute(None, 'AAPL', 10, 'buy')

    assert result.rejected
    assert result.reason.startswith("Insufficient buying power")
    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['total_spent'] == 0
    assert stat['orders_placed'] == 0
    broker.submit_order.assert_not_called()


# ─── Fill sync ───────────────────────────────────────────────────────────────

def test_filled_buy_opens_position_with_default_thresholds(executor, store, broker):
    executor.execute(None, 'AAPL', 10, 'buy')
    broker.get_order.return_value = {
        'id': 'order-1', 'status': 'filled', 'filled_avg_price': 101.0, 'filled_qty': 10
    }

    summary = executor.sync_pending_orders()

    assert summary['filled'] == 1
    position = store.get_position('AAPL', PAPER)
    assert position['quantity'] == 10
    assert position['avg_cost'] == 101.0
    assert position['stop_loss_percent'] == 5.0
    assert position['take_profit_percent'] == 10.0

    assert store.list_trades(PAPER)[0]['status'] == 'filled'
    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['orders_filled'] == 1
    assert stat['positions_opened'] == 1


def test_second_fill_averages_into_position(executor, store, broker):
    store.update_risk_settings({'allow_duplicate_positions': True})
    store.upsert_position({'symbol': 'AAPL', 'quantity': 10, 'avg_cost': 90.0}, PAPER)
    executor.execute(None, 'AAPL', 10, 'buy')
    broker.get_order.return_value = {'status': 'filled', 'filled_avg_price': 110.0, 'filled_qty': 10}

    executor.sync_pending_orders()

    position = store.get_position('AAPL', PAPER)
    assert position['quantity'] == 20
    assert position['avg_cost'] == pytest.approx(100.0)


def test_cancelled_buy_releases_reserved_spend(executor, store, broker):
    executor.execute(None, 'AAPL', 10, 'buy')
    broker.get_order.return_value = {'status': 'canceled'}

    summary = executor.sync_pending_orders()

    assert summary['cancelled'] == 1
    assert store.list_trades(PAPER)[0]['status'] == 'cancelled'
    assert store.get_daily_stat(trading_mode=PAPER)['total_spent'] == 0
    assert store.get_position('AAPL', PAPER) is None


@pytest.mark.parametrize('broker_status', ['canceled', 'expired'])
def test_partially_filled_buy_keeps_filled_shares(executor, store, broker, broker_status):
    executor.execute(None, 'AAPL', 10, 'buy')
    broker.get_order.return_value = {'status': broker_status, 'filled_qty': 6, 'filled_avg_price': 100.0}

    summary = executor.sync_pending_orders()

    assert summary['filled'] == 1
    trade = store.list_trades(PAPER)[0]
    assert trade['status'] == 'filled'
    assert trade['filled_quantity'] == 6
    assert store.get_position('AAPL', PAPER)['quantity'] == 6
    # 4 unfilled shares of the $1000 reservation come back
    assert store.get_daily_stat(trading_mode=PAPER)['total_spent'] == pytest.approx(600.0)


def test_partially_filled_sell_reduces_position(executor, store, broker):
    store.upsert_position({'symbol': 'AAPL', 'quantity': 10, 'avg_cost': 90.0}, PAPER)
    executor.execute(None, 'AAPL', 10, 'sell')
    broker.get_order.return_value = {'status': 'canceled', 'filled_qty': 4, 'filled_avg_price': 100.0}

    executor.sync_pending_orders()

    assert store.get_position('AAPL', PAPER)['quantity'] == 6
    assert store.list_trades(PAPER, status='filled')[0]['filled_quantity'] == 4


def test_order_lookup_failure_leaves_trade_pending(executor, store, broker):
    executor.execute(None, 'AAPL', 10, 'buy')
    broker.get_order.side_effect = AlpacaClientError("timeout")

    summary = executor.sync_pending_orders()

    assert summary['errors']
    assert store.list_trades(PAPER)[0]['status'] == 'pending'


# ─── Liquidation ─────────────────────────────────────────────────────────────

def test_liquidate_closes_position_and_records_round_trip(executor, store, broker):
    position = store.upsert_position({'symbol': 'AAPL', 'quantity': 10, 'avg_cost': 100.0}, PAPER)
    broker.submit_order.return_value = {'id': 'sell-1', 'filled_avg_price': None}

    closed = executor.liquidate(position, 'stop_loss', 94.0)

    assert closed['close_reason'] == 'stop_loss'
    assert closed['realized_pl'] == pytest.approx(-60.0)
    assert store.get_position('AAPL', PAPER) is None

    sell = store.list_trades(PAPER)[0]
    assert sell['side'] == 'sell'
    assert sell['status'] == 'filled'
    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['positions_closed'] == 1
    assert stat['realized_pl'] == pytest.approx(-60.0)


def test_liquidation_works_without_risk_settings(executor, store, broker):
    position = store.upsert_position({'symbol': 'AAPL', 'quantity': 5, 'avg_cost': 100.0}, PAPER)
    os.remove(store._path('risk_settings'))
    broker.submit_order.return_value = {'id': 'sell-1', 'filled_avg_price': 120.0}

    closed = executor.liquidate(position, 'take_profit', 116.0)

    assert closed['exit_price'] == 120.0
