''' Shared mutable state of the gate: who logged in recently, and how fast logins may be attempted. '''

import math
import threading
import time

from knockgate.console import fatal


class SessionStore:
    ''' Maps an IP (string form) to the unix time of its last successful authentication.

    Expiry is sliding: every successful check moves the timestamp to "now". Expired
    entries are removed by the check that finds them, or by sweep().

    Each IP is guarded by one of a fixed set of striped locks, so a check-and-refresh
    on one IP is atomic while checks on other IPs go through other locks. '''

    STRIPES = 64

    def __init__(self, clock=time.time, stripes=STRIPES):
        self._clock = clock
        self._last_seen = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, ip):
        return self._locks[hash(ip) % len(self._locks)]

    def touch(self, ip):
        ''' Records now as the last time ip authenticated. '''
        with self._lock_for(ip):
            self._last_seen[ip] = self._clock()

    def check(self, ip, timeout):
        ''' True if ip authenticated no more than timeout seconds ago. Refreshes the entry when
        it is still valid and forgets it when it expired. '''
        with self._lock_for(ip):
            last_seen = self._last_seen.get(ip)
            if last_seen is None:
                return False
            if not isinstance(last_seen, (int, float)):
                fatal('session store holds {0!r} for {1}, this should be impossible'.format(last_seen, ip))

            now = self._clock()
            if now <= last_seen + timeout:
                self._last_seen[ip] = now
                return True

            del self._last_seen[ip]
            return False

    def sweep(self, timeout):
        ''' Removes every expired entry and returns the IPs that were removed. '''
        expired = []
        for ip in list(self._last_seen):
            with self._lock_for(ip):
                last_seen = self._last_seen.get(ip)
                if last_seen is not None and self._clock() > last_seen + timeout:
                    del self._last_seen[ip]
                    expired.append(ip)
        return expired

    def __len__(self):
        return len(self._last_seen)


class LoginLimiter:
    ''' Fixed window rate limiter shared by every login attempt, whatever IP it comes from.
    The first permit() after a window ends opens a new window of `period` seconds. '''

    def __init__(self, limit=1, period=5, clock=time.monotonic):
        if limit < 1 or period <= 0:
            raise ValueError('limit and period must be positive')
        self.limit = limit
        self.period = period
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = None
        self._count = 0

    def permit(self):
        ''' Counts one attempt. False when the current window already used up its attempts. '''
        with self._lock:
            now = self._clock()
            if self._window_start is None or now >= self._window_start + self.period:
                self._window_start = now
                self._count = 0
            self._count += 1
            return self._count <= self.limit

    def remaining(self):
        with self._lock:
            if self._window_start is None or self._clock() >= self._window_start + self.period:
                return self.limit
            return max(0, self.limit - self._count)

    def reset_in(self):
        ''' Whole seconds until the current window closes. '''
        with self._lock:
            if self._window_start is None:
                return 0
            return max(0, int(math.ceil(self._window_start + self.period - self._clock())))
