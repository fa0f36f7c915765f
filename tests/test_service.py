"""TradingService wiring: profiles, scheduler persistence and rate limits."""

from unittest.mock import MagicMock

import pytest

from trading_scanner.config import TradingMode
from trading_scanner.models import ProfileNotFound
from trading_scanner.service import TradingService

PAPER = TradingMode.PAPER


@pytest.fixture
def jobs():
    created = []

    def factory(name, expression, callback):
        job = MagicMock(name=name)
        job.next_run = None
        created.append(job)
        return job

    factory.created = created
    return factory


@pytest.fixture
def service(store, broker, notifier, jobs):
    return TradingService(trading_mode=PAPER, store=store, broker=broker, notifier=notifier, job_factory=jobs)


def test_profiles_are_scheduled_only_while_scheduler_runs(service, jobs):
    service.create_profile({'name': 'Early', 'schedule_enabled': True})
    assert jobs.created == []

    service.start_scheduler()
    later = service.create_profile({'name': 'Late', 'schedule_enabled': True, 'schedule_interval': 60})

    assert service.scheduler_status()['scheduled_profiles'] == [1, later['id']]

    service.delete_profile(later['id'])
    assert service.scheduler_status()['scheduled_profiles'] == [1]


def test_scheduler_resumes_after_restart(service, store, broker, notifier, jobs):
    service.create_profile({'name': 'Nightly', 'schedule_enabled': True})
    service.start_scheduler()
    service.shutdown()
    assert store.get_app_setting('scheduler_running') == 'true'

    restarted = TradingService(trading_mode=PAPER, store=store, broker=broker, notifier=notifier, job_factory=jobs)
    restarted.start()
    try:
        assert restarted.scheduler.is_running
        assert restarted.monitor.is_running
    finally:
        restarted.shutdown()


def test_explicit_stop_is_remembered(service, store):
    service.start_scheduler()
    service.stop_scheduler()
    assert store.get_app_setting('scheduler_running') == 'false'


def test_rate_limit_updates_persist(service, store, broker, notifier):
    status = service.update_rate_limits('alpha_vantage', max_per_minute=2)
    assert status['max_per_minute'] == 2

    reloaded = TradingService(trading_mode=PAPER, store=store, broker=broker, notifier=notifier)
    limits = reloaded.rate_budget.limits()
    assert limits['alpha_vantage'] == {'max_per_minute': 2, 'max_per_day': 25}
    assert limits['alpaca']['max_per_minute'] == 10000


def test_rate_limit_update_rejects_bad_value(service):
    with pytest.raises(ValueError):
        service.update_rate_limits('alpaca', max_per_minute=-3)


def test_execute_trade_returns_plain_dict(service):
    result = service.execute_trade('AAPL', 5, 'buy')
    assert result['success'] is True
    assert result['estimated_cost'] == 500.0
    assert service.get_trade_history()[0]['symbol'] == 'AAPL'


def test_monitor_interval_is_saved(service, store):
    status = service.set_monitor_interval(45)
    assert status['check_interval'] == 45
    assert store.get_app_setting('monitor_interval_seconds') == '45'


def test_backtest_unknown_profile(service):
    with pytest.raises(ProfileNotFound):
        service.run_backtest(99, '2025-01-01', '2025-02-01')


def test_backtest_uses_profile(store, broker, notifier):
    engine = MagicMock()
    engine.run.return_value = {'mode': 'simulated'}
    service = TradingService(trading_mode=PAPER, store=store, broker=broker, notifier=notifier,
                             backtest_engine=engine)
    profile = service.create_profile({'name': 'Swing'})

    service.run_backtest(profile['id'], '2025-01-01', '2025-02-01', mode='simulated')

    args, kwargs = engine.run.call_args
    assert args[0]['name'] == 'Swing'
    assert kwargs['mode'] == 'simulated'
    assert kwargs['initial_capital'] == 10000.0


def test_risk_settings_update_validates(service):
    assert service.update_risk_settings({'max_positions': 3})['max_positions'] == 3
    with pytest.raises(ValueError):
        service.update_risk_settings({'max_positions': 'three'})
    with pytest.raises(ValueError):
        service.update_risk_settings({'leverage': 2})


def test_monitor_start_stop_status(service):
    service.start_monitor()
    try:
        status = service.monitor_status()
        assert status['running'] is True
        assert status['trading_mode'] == 'paper'
        assert status['positions'] == 0
    finally:
        service.stop_monitor()
    assert service.monitor_status()['running'] is False


def test_audit_events_are_scoped_to_mode(service):
    from trading_scanner.utils import log_audit_event

    log_audit_event('SETTINGS_UPDATED', {'setting': 'other'}, trading_mode='live')
    service.update_risk_settings({'max_positions': 4})
    service.update_rate_limits('alpaca', max_per_minute=100)

    events = service.get_audit_events('SETTINGS_UPDATED')
    assert [e['data']['setting'] for e in events] == ['rate_limits', 'risk_settings']
    assert all(e['trading_mode'] == 'paper' for e in events)

    assert len(service.get_audit_events('SETTINGS_UPDATED', limit=1)) == 1
