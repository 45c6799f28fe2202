from __future__ import annotations

import threading
from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import FakeClock
from guestpass.ratelimit import (
    MAX_RESEND_ATTEMPTS_PER_HOUR,
    RateLimiter,
    build_limiters,
)


def _limiter(clock, max_attempts=3, window=timedelta(hours=1), **kwargs):
    return RateLimiter(max_attempts, window, clock=clock, **kwargs)


def test_allows_max_attempts_then_denies(clock):
    limiter = _limiter(clock)
    results = [limiter.check("client-a") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]


def test_denied_result_reports_window_reset(clock):
    limiter = _limiter(clock, max_attempts=1)
    limiter.check("client-a")
    clock.advance(timedelta(minutes=20))
    denied = limiter.check("client-a")
    assert not denied.allowed
    assert denied.reset_at == clock.now + timedelta(minutes=40)
    assert denied.retry_after_seconds(clock.now) == 40 * 60


def test_retry_after_is_at_least_one_second(clock):
    limiter = _limiter(clock, max_attempts=1)
    limiter.check("client-a")
    clock.advance(timedelta(minutes=59, seconds=59, milliseconds=999))
    denied = limiter.check("client-a")
    assert denied.retry_after_seconds(clock.now) == 1


def test_window_resets_after_it_ends(clock):
    limiter = _limiter(clock, max_attempts=2)
    limiter.check("client-a")
    limiter.check("client-a")
    assert not limiter.check("client-a").allowed
    clock.advance(timedelta(hours=1))
    fresh = limiter.check("client-a")
    assert fresh.allowed
    assert fresh.remaining == 1


def test_identifiers_are_counted_independently(clock):
    limiter = _limiter(clock, max_attempts=1)
    assert limiter.check("client-a").allowed
    assert limiter.check("client-b").allowed
    assert not limiter.check("client-a").allowed


def test_disabled_limiter_always_allows(clock):
    limiter = _limiter(clock, max_attempts=1, disabled=True)
    for _ in range(10):
        result = limiter.check("client-a")
        assert result.allowed
        assert result.remaining == 1
    assert len(limiter) == 0


def test_invalid_configuration_is_rejected(clock):
    with pytest.raises(ValueError):
        RateLimiter(0, timedelta(hours=1), clock=clock)
    with pytest.raises(ValueError):
        RateLimiter(1, timedelta(0), clock=clock)


def test_prune_drops_only_finished_windows(clock):
    limiter = _limiter(clock)
    limiter.check("old")
    clock.advance(timedelta(minutes=30))
    limiter.check("recent")
    clock.advance(timedelta(minutes=31))
    assert limiter.prune() == 1
    assert len(limiter) == 1
    assert limiter.check("recent").remaining == 1


def test_concurrent_checks_never_exceed_limit():
    clock = FakeClock()
    limiter = _limiter(clock, max_attempts=5)
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        result = limiter.check("shared")
        with results_lock:
            results.append(result.allowed)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 5
    assert results.count(False) == 15


def test_build_limiters_uses_group_limits(clock):
    limiters = build_limiters(SimpleNamespace(rate_limit_disabled=False), clock=clock)
    assert limiters.registration.max_attempts == 5
    assert limiters.manage.max_attempts == 10
    assert limiters.resend.max_attempts == MAX_RESEND_ATTEMPTS_PER_HOUR == 3
    assert limiters.admin_login.max_attempts == 5
    assert limiters.admin_login.window == timedelta(minutes=15)
    assert limiters.registration.window == timedelta(hours=1)


def test_admin_login_limiter_resets_after_fifteen_minutes(clock):
    limiter = build_limiters(
        SimpleNamespace(rate_limit_disabled=False), clock=clock
    ).admin_login
    for _ in range(5):
        assert limiter.check("admin").allowed
    assert not limiter.check("admin").allowed
    clock.advance(timedelta(minutes=15))
    assert limiter.check("admin").allowed


def test_build_limiters_warns_when_disabled(clock, caplog):
    caplog.set_level("WARNING", logger="uvicorn.error")
    limiters = build_limiters(SimpleNamespace(rate_limit_disabled=True), clock=clock)
    assert all(limiter.disabled for limiter in limiters.all())
    assert "Rate limiting is DISABLED" in caplog.text


def test_check_prunes_finished_windows_periodically(clock):
    limiter = _limiter(clock, prune_every=3)
    limiter.check("old-client")
    clock.advance(timedelta(minutes=61))

    limiter.check("client-a")
    assert len(limiter) == 2

    limiter.check("client-b")

    assert len(limiter) == 2
    assert "old-client" not in limiter._windows
    assert "old-client" not in limiter._locks


def test_periodic_prune_can_be_turned_off(clock):
    limiter = _limiter(clock, prune_every=0)
    for index in range(5):
        limiter.check(f"client-{index}")
        clock.advance(timedelta(hours=2))

    assert len(limiter) == 5
