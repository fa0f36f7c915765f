"""Position monitor threshold checks and tick behaviour."""

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import AlpacaClientError
from trading_scanner.order_executor import OrderExecutor
from trading_scanner.position_monitor import PositionMonitor, check_thresholds

PAPER = TradingMode.PAPER


@pytest.fixture
def monitor(store, broker, notifier):
    executor = OrderExecutor(store, broker, notifier, trading_mode=PAPER)
    return PositionMonitor(store, broker, executor, notifier, trading_mode=PAPER, check_interval=30)


def hold(store, symbol, avg_cost=100.0, stop_loss=5.0, take_profit=10.0, quantity=10):
    return store.upsert_position({
        'symbol': symbol,
        'quantity': quantity,
        'avg_cost': avg_cost,
        'stop_loss_percent': stop_loss,
        'take_profit_percent': take_profit
    }, PAPER)


def prices(mapping):
    def lookup(symbol):
        value = mapping[symbol]
        if isinstance(value, Exception):
            raise value
        return value
    return lookup


# ─── Test: threshold evaluation ──────────────────────────────────────────────

def test_stop_loss_fires_at_or_below_threshold():
    pl, reason = check_thresholds(100.0, 94.0, 5.0, None)
    assert pl == pytest.approx(-6.0)
    assert reason == 'stop_loss'

    assert check_thresholds(100.0, 95.0, 5.0, None)[1] == 'stop_loss'
    assert check_thresholds(100.0, 95.5, 5.0, None)[1] is None


def test_take_profit_fires_at_or_above_threshold():
    assert check_thresholds(100.0, 116.0, None, 15.0)[1] == 'take_profit'
    assert check_thresholds(100.0, 114.0, None, 15.0)[1] is None


def test_negative_stop_loss_is_treated_as_magnitude():
    assert check_thresholds(100.0, 94.0, -5.0, None)[1] == 'stop_loss'


@pytest.mark.parametrize('stop_loss, take_profit', [(None, None), (0, 0)])
def test_unset_thresholds_never_fire(stop_loss, take_profit):
    assert check_thresholds(100.0, 50.0, stop_loss, take_profit)[1] is None
    assert check_thresholds(100.0, 200.0, stop_loss, take_profit)[1] is None


# ─── Test: tick ──────────────────────────────────────────────────────────────

def test_tick_liquidates_triggered_position(monitor, store, broker, notifier):
    hold(store, 'AAPL')
    hold(store, 'MSFT')
    broker.get_current_price.side_effect = prices({'AAPL': 94.0, 'MSFT': 101.0})
    broker.submit_order.return_value = {'id': 'sell-1', 'filled_avg_price': None}

    results = monitor.tick()

    assert results['positions_checked'] == 2
    assert [c['symbol'] for c in results['closed']] == ['AAPL']
    assert store.get_position('AAPL', PAPER) is None

    closed = store.list_closed_positions(PAPER)
    assert len(closed) == 1
    assert closed[0]['close_reason'] == 'stop_loss'
    assert closed[0]['exit_price'] == 94.0

    msft = store.get_position('MSFT', PAPER)
    assert msft['current_price'] == 101.0
    assert msft['unrealized_pl'] == pytest.approx(10.0)

    assert notifier.notify.call_args.args[:2] == ('warning', 'Stop-Loss Executed')


def test_failed_sell_does_not_stop_other_positions(monitor, store, broker, notifier):
    hold(store, 'AAPL')
    hold(store, 'MSFT')
    broker.get_current_price.side_effect = prices({'AAPL': 90.0, 'MSFT': 120.0})

    def submit(symbol, **kwargs):
        if symbol == 'AAPL':
            raise AlpacaClientError("market closed")
        return {'id': 'sell-2', 'filled_avg_price': 120.0}

    broker.submit_order.side_effect = submit

    results = monitor.tick()

    assert [c['symbol'] for c in results['closed']] == ['MSFT']
    assert results['errors'][0]['symbol'] == 'AAPL'
    # The failed position stays open for the next tick
    assert store.get_position('AAPL', PAPER) is not None

    titles = [call.args[1] for call in notifier.notify.call_args_list]
    assert 'Auto-Sell Failed' in titles
    assert 'Take-Profit Executed' in titles


def test_price_failure_skips_position(monitor, store, broker):
    hold(store, 'AAPL')
    broker.get_current_price.side_effect = AlpacaClientError("no quote")

    results = monitor.tick()

    assert results['skipped'] == ['AAPL']
    broker.submit_order.assert_not_called()
    assert store.get_position('AAPL', PAPER) is not None


def test_position_without_thresholds_is_only_repriced(monitor, store, broker):
    hold(store, 'AAPL', stop_loss=None, take_profit=None)
    broker.get_current_price.return_value = 40.0

    results = monitor.tick()

    assert results['closed'] == []
    assert store.get_position('AAPL', PAPER)['current_price'] == 40.0


# ─── Test: configuration and manual actions ──────────────────────────────────

def test_interval_below_minimum_rejected(store, broker, notifier, monitor):
    with pytest.raises(ValueError):
        PositionMonitor(store, broker, monitor.executor, notifier, trading_mode=PAPER, check_interval=5)
    with pytest.raises(ValueError):
        monitor.set_check_interval(9)
    assert monitor.check_interval == 30


def test_update_position_none_disables_threshold(monitor, store):
    hold(store, 'AAPL')

    updated = monitor.update_position('AAPL', stop_loss_percent=None)

    assert updated['stop_loss_percent'] is None
    assert updated['take_profit_percent'] == 10.0


def test_update_unknown_position_raises(monitor):
    with pytest.raises(KeyError):
        monitor.update_position('ZZZZ', take_profit_percent=5)


def test_manual_close_records_manual_reason(monitor, store, broker):
    hold(store, 'AAPL')
    broker.get_current_price.return_value = 105.0

    closed = monitor.close_position('AAPL')

    broker.close_position.assert_called_once_with('AAPL')
    assert closed['close_reason'] == 'manual'
    assert closed['realized_pl'] == pytest.approx(50.0)
    assert store.get_position('AAPL', PAPER) is None


def test_start_and_stop(monitor, broker):
    monitor.start()
    assert monitor.is_running
    monitor.stop()
    assert not monitor.is_running
    assert monitor.get_status()['running'] is False
