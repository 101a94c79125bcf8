''' Registered users and TOTP code validation. '''

import collections
import datetime
import hashlib
import re
import urllib.parse

import pyotp      # pip: pyotp

from knockgate.console import log, err

# 6 digits, HMAC-SHA1, 30 seconds steps, as issued by every authenticator app.
DIGITS = 6
INTERVAL = 30

User = collections.namedtuple('User', ['name', 'secret'])


def valid_base32(secret):
    ''' Checks if secret is a valid base32 secret for use by the pyotp module. '''
    # secret length MAY vary, and may be optionnally padded with '=' at the end.
    totp_secret_regex = re.compile(r'^[A-Z2-7]+=*$')
    return bool(totp_secret_regex.match(secret))

def parse_user(url):
    ''' Turns an enrollment URL (otpauth://totp/issuer:name?secret=BASE32) into a User.
    Returns None if the name or the secret cannot be found. '''
    if not isinstance(url, str):
        return None
    try:
        parts = urllib.parse.urlsplit(url.strip())
    except ValueError:
        return None

    chunks = urllib.parse.unquote(parts.path).split(':')
    username = chunks[1].strip() if len(chunks) == 2 else ''

    secret = urllib.parse.parse_qs(parts.query).get('secret', [''])[0]
    secret = secret.replace(' ', '').upper()

    if username == '' or secret == '' or not valid_base32(secret):
        return None
    return User(username, secret)

def load_users(urls):
    ''' Builds the user collection from enrollment URLs. Unusable URLs are logged and skipped. '''
    users = []
    for i, url in enumerate(urls):
        user = parse_user(url)
        if user is None:
            # never log the URL itself, it carries the secret
            err('Configuration error in Users: entry #{0} is not a valid otpauth:// URL with a name and a secret, skipping it.'.format(i + 1))
            continue
        users.append(user)

    if len(users) > 0:
        log('user list:')
        for user in users:
            log('- {0}'.format(user.name))

    return tuple(users)


class TOTPValidator:
    ''' Checks submitted codes against every registered user. No clock skew is tolerated:
    a code is only good during its own 30 seconds step. '''

    def __init__(self, users):
        self.users = tuple(users)
        self._totps = [(user.name, pyotp.TOTP(user.secret, digits=DIGITS, digest=hashlib.sha1, interval=INTERVAL))
                       for user in self.users]

    def validate(self, code, instant=None):
        ''' Returns the name of the first user for whom code is valid at instant, or None. '''
        if code is None:
            return None
        code = str(code).strip()
        if len(code) != DIGITS or not code.isdigit():
            return None

        if instant is None:
            instant = datetime.datetime.now(datetime.timezone.utc)
        if not isinstance(instant, datetime.datetime):
            instant = datetime.datetime.fromtimestamp(int(instant), datetime.timezone.utc)
        elif instant.tzinfo is None:
            instant = instant.replace(tzinfo=datetime.timezone.utc)

        for name, totp in self._totps:
            if totp.verify(code, for_time=instant, valid_window=0):
                return name
        return None

    def __len__(self):
        return len(self.users)
