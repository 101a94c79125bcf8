"""Tests for the session store and the global login limiter."""

import threading

import pytest

from knockgate import sessions as sessions_module
from knockgate.sessions import LoginLimiter, SessionStore

TIMEOUT = 60


def test_unknown_ip_is_not_authenticated(clock):
    store = SessionStore(clock=clock)
    assert store.check('10.0.0.1', TIMEOUT) is False


def test_window_is_inclusive(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(TIMEOUT)
    assert store.check('10.0.0.1', TIMEOUT) is True


def test_expired_entry_is_forgotten(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(TIMEOUT + 1)
    assert store.check('10.0.0.1', TIMEOUT) is False
    assert len(store) == 0
    # and stays gone
    clock.now -= TIMEOUT
    assert store.check('10.0.0.1', TIMEOUT) is False


def test_check_slides_the_window(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(50)
    assert store.check('10.0.0.1', TIMEOUT) is True
    # 100s after login, but only 50s after the last check
    clock.advance(50)
    assert store.check('10.0.0.1', TIMEOUT) is True
    clock.advance(TIMEOUT + 1)
    assert store.check('10.0.0.1', TIMEOUT) is False


def test_touch_overwrites(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(TIMEOUT - 1)
    store.touch('10.0.0.1')
    clock.advance(TIMEOUT - 1)
    assert store.check('10.0.0.1', TIMEOUT) is True


def test_sweep_removes_only_expired(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(30)
    store.touch('10.0.0.2')
    clock.advance(TIMEOUT - 10)

    assert store.sweep(TIMEOUT) == ['10.0.0.1']
    assert len(store) == 1
    assert store.check('10.0.0.2', TIMEOUT) is True


def test_corrupted_entry_aborts(clock, monkeypatch):
    class Aborted(Exception):
        pass

    def fake_fatal(msg):
        raise Aborted(msg)

    monkeypatch.setattr(sessions_module, 'fatal', fake_fatal)
    store = SessionStore(clock=clock)
    store._last_seen['10.0.0.1'] = 'yesterday'
    with pytest.raises(Aborted):
        store.check('10.0.0.1', TIMEOUT)


def test_concurrent_access_to_many_ips():
    store = SessionStore()
    errors = []

    def worker(n):
        ip = '10.0.{0}.{1}'.format(n // 256, n % 256)
        try:
            for _ in range(200):
                store.touch(ip)
                if not store.check(ip, TIMEOUT):
                    errors.append(ip)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(32)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store) == 32


class StepClock:
    """Moves one second forward every time it is read."""

    def __init__(self, now=0.0):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now += 1
            return self.now


def run_together(n, target):
    errors = []
    barrier = threading.Barrier(n)

    def worker():
        barrier.wait()
        try:
            target()
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_touch_and_check_on_one_ip_at_the_boundary():
    # Every read of the clock is one second after the previous one and the timeout is
    # one second: a check only passes if nothing slipped between it and the last write.
    clock = StepClock()
    store = SessionStore(clock=clock)
    results = []

    def hammer():
        for _ in range(300):
            store.touch('10.0.0.1')
            results.append(store.check('10.0.0.1', 1))

    errors = run_together(16, hammer)

    assert errors == []
    assert len(results) == 16 * 300
    assert all(results)
    assert len(store) == 1

    clock.now += 5
    assert store.check('10.0.0.1', 1) is False
    assert len(store) == 0


def test_concurrent_checks_of_an_expired_ip(clock):
    store = SessionStore(clock=clock)
    store.touch('10.0.0.1')
    clock.advance(TIMEOUT + 1)
    results = []

    errors = run_together(16, lambda: results.append(store.check('10.0.0.1', TIMEOUT)))

    assert errors == []
    assert results == [False] * 16
    assert len(store) == 0


# -- limiter ---------------------------------------------------------------


def test_limiter_one_per_five_seconds(clock):
    limiter = LoginLimiter(1, 5, clock=clock)
    assert limiter.permit() is True
    clock.advance(1)
    assert limiter.permit() is False


def test_limiter_new_window(clock):
    limiter = LoginLimiter(1, 5, clock=clock)
    assert limiter.permit() is True
    clock.advance(6)
    assert limiter.permit() is True


def test_limiter_counts_within_window(clock):
    limiter = LoginLimiter(3, 10, clock=clock)
    assert [limiter.permit() for _ in range(5)] == [True, True, True, False, False]
    assert limiter.remaining() == 0


def test_limiter_reset_in(clock):
    limiter = LoginLimiter(1, 5, clock=clock)
    assert limiter.reset_in() == 0
    assert limiter.remaining() == 1
    limiter.permit()
    clock.advance(1.5)
    assert limiter.reset_in() == 4
    clock.advance(10)
    assert limiter.reset_in() == 0
    assert limiter.remaining() == 1


def test_limiter_is_global_under_concurrency():
    limiter = LoginLimiter(1, 60)
    results = []
    barrier = threading.Barrier(16)

    def worker():
        barrier.wait()
        results.append(limiter.permit())

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_limiter_rejects_nonsense():
    with pytest.raises(ValueError):
        LoginLimiter(0, 5)
    with pytest.raises(ValueError):
        LoginLimiter(1, 0)
