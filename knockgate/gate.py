''' The authorization decision and the login state machine. '''

import collections
import datetime
import enum
import threading
import time

from knockgate.validator import INTERVAL
from knockgate.wildcards import matches


class Outcome(enum.Enum):
    ALREADY_AUTHORIZED = 'already authorized'
    ACCEPTED = 'accepted'
    MISSING_CODE = 'missing code'
    REJECTED = 'rejected'


LoginResult = collections.namedtuple('LoginResult', ['outcome', 'user'])


class Gate:
    ''' Decides whether an IP may pass, and lets IPs in through a TOTP login.

    Precedence is deny list, then allow list, then the session store. The deny list wins
    even over a live session, so that an operator can lock an IP out right away. '''

    def __init__(self, deny, allow, sessions, validator, timeout_minutes, limiter,
                 reuse_codes=True, clock=time.time):
        self.deny = tuple(deny)
        self.allow = tuple(allow)
        self.sessions = sessions
        self.validator = validator
        self.timeout = timeout_minutes * 60
        self.limiter = limiter
        self.reuse_codes = reuse_codes
        self._clock = clock
        self._used_steps = {}
        self._used_lock = threading.Lock()

    def is_authorized(self, ip):
        if matches(ip, self.deny):
            return False
        if matches(ip, self.allow):
            return True
        return self.sessions.check(ip, self.timeout)

    def permit_login(self):
        ''' One login attempt against the global budget. False means answer 429 and stop there. '''
        return self.limiter.permit()

    def login(self, ip, code, instant=None):
        ''' Processes a login form submitted from ip. The caller already went through permit_login(). '''
        if self.is_authorized(ip):
            return LoginResult(Outcome.ALREADY_AUTHORIZED, None)

        if code is None or code == '':
            return LoginResult(Outcome.MISSING_CODE, None)

        if instant is None:
            instant = self._clock()
        elif isinstance(instant, datetime.datetime):
            if instant.tzinfo is None:
                instant = instant.replace(tzinfo=datetime.timezone.utc)
            instant = instant.timestamp()
        user = self.validator.validate(code, instant)
        if user is None:
            return LoginResult(Outcome.REJECTED, None)

        if not self.reuse_codes and not self._first_use(user, instant):
            return LoginResult(Outcome.REJECTED, user)

        self.sessions.touch(ip)
        return LoginResult(Outcome.ACCEPTED, user)

    def _first_use(self, user, instant):
        ''' Remembers the step in which user last logged in. False if that step was already used. '''
        step = int(instant) // INTERVAL
        with self._used_lock:
            if self._used_steps.get(user) == step:
                return False
            self._used_steps[user] = step
            return True
