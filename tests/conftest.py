"""Shared fixtures: a throwaway store per test and mock broker collaborators."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from trading_scanner import config
from trading_scanner.storage import TradingStore


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Keep every audit event inside the test's temp directory."""
    path = tmp_path / 'audit_log.jsonl'
    monkeypatch.setattr(config, 'AUDIT_LOG_FILE', str(path))
    return path


@pytest.fixture
def store(tmp_path):
    s = TradingStore(str(tmp_path / 'data'))
    s.initialize()
    return s


@pytest.fixture
def broker():
    b = MagicMock()
    b.get_current_price.return_value = 100.0
    b.get_quote.return_value = 100.0
    b.get_buying_power.return_value = 1_000_000.0
    b.is_market_open.return_value = True
    b.submit_order.return_value = {
        'id': 'order-1',
        'order_id': 'order-1',
        'status': 'accepted',
        'filled_avg_price': None
    }
    b.close_position.return_value = {'order_id': 'close-1'}
    return b


@pytest.fixture
def notifier():
    return MagicMock()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeWallClock:
    """Manually advanced wall clock for calendar-day logic."""

    def __init__(self, moment=None):
        self.moment = moment or datetime(2026, 3, 2, 10, 0, 0)

    def __call__(self):
        return self.moment


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeWallClock()
