"""Shared test fixtures for knockgate."""

import pyotp
import pytest

from knockgate.gate import Gate
from knockgate.sessions import LoginLimiter, SessionStore
from knockgate.validator import TOTPValidator, User
from knockgate.wildcards import parse_wildcard

ALICE_SECRET = 'JBSWY3DPEHPK3PXP'
BOB_SECRET = 'KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TF'

# 1700000010 is the first second of a 30 seconds step
STEP_START = 1700000010.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=STEP_START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def code_for(secret, at):
    return pyotp.TOTP(secret).at(int(at))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def users():
    return (User('alice', ALICE_SECRET), User('bob', BOB_SECRET))


@pytest.fixture
def make_gate(clock, users):
    """Factory building a gate over fake-clock state."""

    def _make(deny=(), allow=(), timeout_minutes=60, reuse_codes=True, limit=1, period=5):
        return Gate(
            deny=[parse_wildcard(d) for d in deny],
            allow=[parse_wildcard(a) for a in allow],
            sessions=SessionStore(clock=clock),
            validator=TOTPValidator(users),
            timeout_minutes=timeout_minutes,
            limiter=LoginLimiter(limit, period, clock=clock),
            reuse_codes=reuse_codes,
            clock=clock,
        )

    return _make
