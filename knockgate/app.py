from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import argparse
import ipaddress
import os
import signal
import sys
import threading
import urllib.parse

from knockgate import __version__, app_name
from knockgate.config import ConfigError, default_configuration_file, open_yaml
from knockgate.console import log, err
from knockgate.enroll import adduser
from knockgate.gate import Gate, Outcome
from knockgate.notify import Notifier
from knockgate.sessions import LoginLimiter, SessionStore
from knockgate.validator import TOTPValidator, load_users
from knockgate.wildcards import parse_wildcards

# Reverse proxy setup (nginx), the proxy MUST overwrite the IP header:
#   location = /@authorize { internal; proxy_pass http://127.0.0.1:4302;
#       proxy_pass_request_body off; proxy_set_header Content-Length "";
#       proxy_set_header X-Real-IP $remote_addr; }
#   location = /@login { proxy_pass http://127.0.0.1:4302; proxy_set_header X-Real-IP $remote_addr; }
#   location / { auth_request /@authorize; error_page 401 = @login_redirect; ... }

# Debugging bash aliases:
# alias authz='myauthz() { curl -i http://127.0.0.1:4302/@authorize -H "X-Real-IP: $1" ; }; myauthz'
# alias login='mylogin() { curl -i http://127.0.0.1:4302/@login -H "X-Real-IP: $1" -d "otp=$2" ; }; mylogin'

MAX_FORM_BYTES = 4096
# bodies up to this size are read off the socket before answering, even when unused
MAX_BODY_BYTES = 65536

LOGIN_PAGE = b'''<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta name="robots" content="noindex, nofollow">
<title>Login</title>
<style>
body { font-family: sans-serif; display: flex; justify-content: center; align-items: center; min-height: 90vh; }
form { display: flex; gap: .5em; }
input { font-size: 1.5em; padding: .2em .4em; }
#otp { width: 6.5ch; letter-spacing: .1em; }
</style>
</head>
<body>
<form method="post">
<input id="otp" name="otp" type="text" inputmode="numeric" pattern="[0-9]{6}" maxlength="6"
       autocomplete="one-time-code" autofocus required>
<input type="submit" value="&#x2192;">
</form>
</body>
</html>
'''


class GateHandler(BaseHTTPRequestHandler):
    ''' Overrides BaseHTTPRequestHandler and serves as the class that deals with incoming HTTP requests.
    create_server() subclasses it with the configuration, gate and notifier set. '''

    configuration = None
    gate = None
    notifier = None

    def version_string(self):
        ''' Overrides the default HTTP Server 'Server' header when replying to an HTTP request '''
        return self.configuration['ServerName']

    def log_request(self, code='-', size='-'):
        ''' Access log: "METHOD PATH PROTO" STATUS REAL-IP (PEER) '''
        # headers are not parsed yet when the request line itself was refused
        headers = getattr(self, 'headers', None)
        log('"{0}" {1} {2} ({3})'.format(
            getattr(self, 'requestline', ''),
            getattr(code, 'value', code),
            headers.get(self.configuration['Server-Forwarded-IP-Header'], '-') if headers is not None else '-',
            self.client_address[0]))

    def log_message(self, format, *args):
        # only reached through log_error(), access lines go through log_request()
        err(format % args)

    def respond(self, status, body=b'', content_type='text/plain; charset=utf-8', headers=None):
        self.read_body()
        self.send_response(status)
        self.send_header('Cache-Control', 'no-cache, no-store, must-revalidate')
        self.send_header('Pragma', 'no-cache')
        self.send_header('Expires', '0')
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if body:
            self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if body and self.command != 'HEAD':
            self.wfile.write(body)
        self.close_connection = True
        self._responded = True

    def redirect_to_success(self):
        self.respond(302, headers={'Location': self.configuration['Login-Success-URL']})

    def real_ip(self):
        ''' The origin IP as reported by the reverse proxy. Answers 500 and returns None when it is missing.
        The header is trusted as is: the proxy must overwrite any value the client sent. '''
        header = self.configuration['Server-Forwarded-IP-Header']
        value = self.headers.get(header)
        try:
            ipaddress.ip_address((value or '').strip())
        except ValueError:
            # This happens when the reverse proxy does NOT pass the header along,
            # or passes something else than a single address.
            err('Reverse proxy configuration error: a valid {0!r} header is required, got {1!r}.'.format(header, value))
            self.respond(500, b'Internal Server Error')
            return None
        return value.strip()

    def read_body(self):
        ''' Reads the request body once. Anything over MAX_BODY_BYTES stays on the socket. '''
        if self._body is None:
            try:
                length = int(self.headers.get('Content-Length', '0') or '0')
            except ValueError:
                length = 0
            self._body = self.rfile.read(length) if 0 < length <= MAX_BODY_BYTES else b''
        return self._body

    def read_otp(self):
        ''' Returns the otp form field, or None if the form is missing, too big or unreadable. '''
        body = self.read_body()
        if len(body) == 0 or len(body) > MAX_FORM_BYTES:
            return None
        try:
            form = urllib.parse.parse_qs(body.decode('utf-8'))
        except UnicodeDecodeError:
            return None
        return form.get('otp', [''])[0].strip()

    def handle_authorize(self):
        ip = self.real_ip()
        if ip is None:
            return
        if self.gate.is_authorized(ip):
            self.respond(202)
        else:
            self.respond(401)

    def handle_login_get(self):
        ip = self.real_ip()
        if ip is None:
            return
        if self.gate.is_authorized(ip):
            self.redirect_to_success()
            return
        self.respond(200, LOGIN_PAGE, content_type='text/html; charset=utf-8')

    def handle_login_post(self):
        # The limiter comes first and is shared by every IP.
        if not self.gate.permit_login():
            limiter = self.gate.limiter
            reset = limiter.reset_in()
            self.respond(429, b'Too Many Requests', headers={
                'Retry-After': str(max(1, reset)),
                'X-RateLimit-Limit': str(limiter.limit),
                'X-RateLimit-Remaining': str(limiter.remaining()),
                'X-RateLimit-Reset': str(reset),
            })
            return

        ip = self.real_ip()
        if ip is None:
            return

        result = self.gate.login(ip, self.read_otp())
        if result.outcome == Outcome.ALREADY_AUTHORIZED:
            self.redirect_to_success()
        elif result.outcome == Outcome.ACCEPTED:
            log('valid otp from user {0} at IP {1}'.format(result.user, ip))
            self.redirect_to_success()
            # notifications go out once the answer is on the wire
            self.notifier.login_success(ip, result.user)
        elif result.outcome == Outcome.MISSING_CODE:
            self.respond(400, b'Bad Form')
        else:
            log('invalid otp from IP {0}'.format(ip))
            self.respond(403, b'Go Away')
            self.notifier.login_failure(ip)

    def dispatch(self):
        ''' Main entrypoint for incoming HTTP requests '''
        self._responded = False
        self._body = None
        # the proxy may pass the client's query string along, only the path routes.
        path = urllib.parse.urlsplit(self.path).path
        try:
            if path == self.configuration['API-Authorize-Path']:
                self.handle_authorize()
            elif path == self.configuration['API-Login-Path']:
                if self.command in ('GET', 'HEAD'):
                    self.handle_login_get()
                elif self.command == 'POST':
                    self.handle_login_post()
                else:
                    self.respond(405, b'Method Not Allowed', headers={'Allow': 'GET, HEAD, POST'})
            else:
                self.respond(404, b'Not Found')
        except Exception as e:
            err('Unhandled exception while serving {0} {1}: {2!r}'.format(self.command, path, e))
            if not self._responded:
                self.respond(500, b'Internal Server Error')

    do_GET = dispatch
    do_HEAD = dispatch
    do_POST = dispatch
    do_PUT = dispatch
    do_DELETE = dispatch
    do_PATCH = dispatch
    do_OPTIONS = dispatch


def build_gate(configuration):
    ''' Parses the lists and users out of the configuration and wires the gate together. '''
    deny = parse_wildcards(configuration['Denied'], 'deny')
    allow = parse_wildcards(configuration['Allowed'], 'allow')
    users = load_users(configuration['Users'])

    log('{0} users known, {1} IPs explicitly allowed, {2} explicitly denied.'.format(len(users), len(allow), len(deny)))
    if len(users) == 0 and len(allow) == 0:
        err('No user and no allowed IP configured: every request will be refused.')

    return Gate(
        deny=deny,
        allow=allow,
        sessions=SessionStore(),
        validator=TOTPValidator(users),
        timeout_minutes=configuration['Session-Timeout'],
        limiter=LoginLimiter(configuration['Login-Rate-Limit-Times'], configuration['Login-Rate-Limit-Period']),
        reuse_codes=configuration['Login-Reuses-TOTP'],
    )

def create_server(configuration, gate, notifier=None):
    handler_cls = type('KnockgateHandler', (GateHandler,), {})
    handler_cls.configuration = configuration
    handler_cls.gate = gate
    handler_cls.notifier = notifier if notifier is not None else Notifier(configuration['Notify'])
    server = ThreadingHTTPServer((configuration['ServerHost'], configuration['ServerPort']), handler_cls)
    server.daemon_threads = True
    return server

def do_maintenance(gate, notifier):
    ''' Forgets the sessions that expired without their IP coming back. '''
    expired = gate.sessions.sweep(gate.timeout)
    for ip in expired:
        notifier.session_close(ip)
    if len(expired) > 0:
        log('Maintenance: {0} expired sessions removed, {1} still active.'.format(len(expired), len(gate.sessions)))
    return expired

def maintenance_thread(gate, notifier, interval, stop):
    while not stop.wait(interval):
        try:
            do_maintenance(gate, notifier)
        except Exception as e:
            err('Maintenance failed, will retry in {0} seconds: {1!r}'.format(interval, e))

def serve(configuration, gate):
    notifier = Notifier(configuration['Notify'])
    httpd = create_server(configuration, gate, notifier)
    stop = threading.Event()

    def handle_signals(sig, frame):
        log('Received signal {0}, shutting down.'.format(sig))
        stop.set()
        httpd.shutdown()

    # Launches a thread for the web server
    server_t = threading.Thread(target=httpd.serve_forever, name='server')
    server_t.start()
    log('starting server at http://{0}:{1}'.format(*httpd.server_address[:2]))

    # Launches another thread for maintenance
    if configuration['Session-Sweep-Interval'] > 0:
        maintenance_t = threading.Thread(target=maintenance_thread, name='maintenance',
                                         args=(gate, notifier, configuration['Session-Sweep-Interval'], stop))
        maintenance_t.daemon = True
        maintenance_t.start()

    # Signals
    signal.signal(signal.SIGTERM, handle_signals)
    signal.signal(signal.SIGINT, handle_signals)

    # Wait until server_t ended
    while server_t.is_alive():
        server_t.join(timeout=1)
    httpd.server_close()

def parse_args(argv):
    parser = argparse.ArgumentParser(prog=app_name, description='TOTP login gate for reverse proxy auth_request.')
    parser.add_argument('-c', '--config', default=None,
                        help='configuration file (default: $CONFIG or {0})'.format(default_configuration_file))
    parser.add_argument('--version', action='version', version='%(prog)s ' + __version__)
    commands = parser.add_subparsers(dest='command')
    commands.add_parser('serve', help='run the gate (default)')
    add = commands.add_parser('adduser', help='generate a secret for a new user and print its enrollment URL')
    add.add_argument('username')
    add.add_argument('--issuer', default=app_name)
    return parser.parse_args(argv)

def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)

    if args.command == 'adduser':
        # Generate new seed url and display it, then exit.
        adduser(args.username, args.issuer)
        return 0

    configuration_file = args.config or os.environ.get('CONFIG') or default_configuration_file
    if args.config is None and os.environ.get('CONFIG') is not None:
        log('Using environment variable CONFIG={0}'.format(configuration_file))

    try:
        configuration = open_yaml(configuration_file)
    except ConfigError as e:
        err("I'm a coward, and i'm bailing out:")
        err(e)
        return 1

    log('{0} {1} starting'.format(app_name, __version__))
    gate = build_gate(configuration)
    serve(configuration, gate)
    return 0

if __name__ == '__main__':
    sys.exit(main())
