"""RateBudget admission, waiting and configuration."""

import json
from datetime import datetime

import pytest

from trading_scanner.models import RateLimitExceeded
from trading_scanner.rate_limiter import RateBudget


def make_budget(fake_clock, wall_clock, per_minute=3, per_day=None, sleeps=None):
    return RateBudget(
        {'test': {'max_per_minute': per_minute, 'max_per_day': per_day}},
        clock=fake_clock,
        now_fn=wall_clock,
        sleep=(sleeps.append if sleeps is not None else lambda s: None)
    )


# ─── Per-minute window ───────────────────────────────────────────────────────

def test_denies_past_per_minute_cap(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=3)

    for _ in range(3):
        assert budget.admit('test').allowed
        fake_clock.advance(1)

    denied = budget.admit('test')
    assert not denied.allowed
    # Oldest call was at t=1000, now is t=1003
    assert denied.retry_after == pytest.approx(57.0)


def test_rolling_window_readmits_after_oldest_expires(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=2)

    assert budget.admit('test').allowed          # t=1000
    fake_clock.advance(30)
    assert budget.admit('test').allowed          # t=1030
    assert not budget.admit('test').allowed

    fake_clock.advance(30)                       # t=1060, first call leaves the window
    assert budget.admit('test').allowed
    assert not budget.admit('test').allowed


def test_never_exceeds_cap_in_any_rolling_window(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=5)
    admitted = []

    for step in range(600):
        if budget.admit('test').allowed:
            admitted.append(fake_clock.now)
        fake_clock.advance(0.7 if step % 3 else 2.3)

    for i, start in enumerate(admitted):
        in_window = [t for t in admitted[i:] if t - start < 60]
        assert len(in_window) <= 5


def test_denied_call_is_not_counted(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=1)
    budget.admit('test')
    budget.admit('test')
    budget.admit('test')

    assert budget.status('test')['requests_this_minute'] == 1
    assert budget.status('test')['requests_today'] == 1


# ─── Per-day counter ─────────────────────────────────────────────────────────

def test_daily_cap_resets_on_new_day(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=None, per_day=2)

    assert budget.admit('test').allowed
    assert budget.admit('test').allowed
    denied = budget.admit('test')
    assert not denied.allowed
    assert 'daily limit' in denied.reason
    # 10:00 -> midnight
    assert denied.retry_after == pytest.approx(14 * 3600)

    wall_clock.moment = datetime(2026, 3, 3, 0, 0, 1)
    assert budget.admit('test').allowed


# ─── Status and configuration ────────────────────────────────────────────────

def test_status_does_not_mutate(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=1)

    for _ in range(5):
        status = budget.status('test')
    assert status['requests_this_minute'] == 0
    assert budget.admit('test').allowed


def test_configure_takes_effect_on_next_admit(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock, per_minute=1)
    assert budget.admit('test').allowed
    assert not budget.admit('test').allowed

    budget.configure('test', max_per_minute=5)
    assert budget.admit('test').allowed
    assert budget.limits()['test'] == {'max_per_minute': 5, 'max_per_day': None}


def test_configure_rejects_negative_limit(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock)
    with pytest.raises(ValueError):
        budget.configure('test', max_per_minute=-1)


def test_unknown_provider_is_uncapped(fake_clock, wall_clock):
    budget = make_budget(fake_clock, wall_clock)
    for _ in range(50):
        assert budget.admit('somebody_else').allowed


# ─── acquire() ───────────────────────────────────────────────────────────────

def test_acquire_waits_out_short_denial(fake_clock, wall_clock):
    sleeps = []
    budget = make_budget(fake_clock, wall_clock, per_minute=1, sleeps=sleeps)
    budget.admit('test')

    # The fake sleep does not move the clock, so advance it from the sleeper
    def sleeper(seconds):
        sleeps.append(seconds)
        fake_clock.advance(seconds)

    budget._sleep = sleeper
    budget.acquire('test', timeout=120)

    assert sleeps == [pytest.approx(60.0)]


def test_acquire_raises_when_wait_exceeds_timeout(fake_clock, wall_clock, audit_log):
    budget = make_budget(fake_clock, wall_clock, per_minute=1)
    budget.admit('test')

    with pytest.raises(RateLimitExceeded) as exc_info:
        budget.acquire('test', timeout=5)

    assert exc_info.value.provider == 'test'
    assert exc_info.value.retry_after == pytest.approx(60.0)

    events = [json.loads(line) for line in audit_log.read_text().splitlines()]
    assert events[-1]['event_type'] == 'RATE_LIMIT_DENIED'
