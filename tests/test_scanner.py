"""Profile screening against quote and bar data."""

import json

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import AlpacaClientError, ProfileNotFound, RateLimitExceeded
from trading_scanner.scanner import ProfileScanner, matches_criteria

PAPER = TradingMode.PAPER

BARS = {
    'AAPL': {'open': 100.0, 'high': 106.0, 'low': 99.0, 'close': 105.0, 'volume': 2_000_000},
    'PENNY': {'open': 2.0, 'high': 2.1, 'low': 1.9, 'close': 2.0, 'volume': 50_000},
}


@pytest.fixture
def scanner(store, broker):
    def latest_bar(symbol):
        if symbol not in BARS:
            raise AlpacaClientError(f"No bar data for {symbol}")
        return BARS[symbol]

    broker.get_latest_bar.side_effect = latest_bar
    broker.get_quote.side_effect = lambda symbol: None
    return ProfileScanner(store, broker, PAPER)


def test_matches_criteria_bounds():
    data = {'price': 50.0, 'volume': 1000, 'day_change_percent': 2.0}
    assert matches_criteria(data, {})
    assert matches_criteria(data, {'priceMin': 50, 'priceMax': 50})
    assert not matches_criteria(data, {'priceMin': 51})
    assert not matches_criteria(data, {'changePercentMax': 1.5})
    assert not matches_criteria({'price': 50.0}, {'volumeMin': 1})


def test_stock_data_uses_bar_when_no_quote(scanner):
    data = scanner.get_stock_data('AAPL')
    assert data['price'] == 105.0
    assert data['day_change_percent'] == pytest.approx(5.0)


def test_scan_skips_symbols_without_data(scanner):
    matches = scanner.scan_stocks({'symbols': ['AAPL', 'PENNY', 'GONE'], 'priceMin': 10})
    assert [m['symbol'] for m in matches] == ['AAPL']


def test_rate_limit_aborts_scan(scanner, broker):
    broker.get_latest_bar.side_effect = RateLimitExceeded('alpaca', 30.0)
    with pytest.raises(RateLimitExceeded):
        scanner.scan_stocks({'symbols': ['AAPL']})


def test_run_scan_records_stats_and_audit(scanner, store, audit_log):
    profile = store.create_profile({'name': 'Movers', 'parameters': {'symbols': ['AAPL', 'PENNY']}})

    results = scanner.run_scan(profile['id'])

    assert len(results['matches']) == 2
    stat = store.get_daily_stat(trading_mode=PAPER)
    assert stat['scans_run'] == 1
    assert stat['matches_found'] == 2

    event = json.loads(audit_log.read_text().splitlines()[-1])
    assert event['event_type'] == 'SCAN_COMPLETED'
    assert event['data']['matches'] == ['AAPL', 'PENNY']


def test_non_stock_profile_has_no_matches(scanner, store, broker):
    profile = store.create_profile({'name': 'Calls', 'asset_type': 'call_option'})
    assert scanner.run_scan(profile['id'])['matches'] == []
    broker.get_latest_bar.assert_not_called()


def test_unknown_profile(scanner):
    with pytest.raises(ProfileNotFound):
        scanner.run_scan(404)
