''' Optional HTTP notifications (gotify, ntfy, any webhook) about logins and expired sessions. '''

import datetime
import urllib.parse

import requests   # pip: requests

from knockgate.console import log, err


class Notifier:
    ''' Sends the configured form payload whenever a login succeeds, fails, or a session is swept. '''

    def __init__(self, settings, session=None):
        self.settings = settings
        self.session = session if session is not None else requests.Session()

    def format_payload(self, ip, status, user=''):
        ''' Prepares the HTTP Form object by replacing macros for relevant information. '''
        payload = dict(self.settings['Notify-HTTP-Form-Payload'])
        for k in payload:
            if type(payload[k]) == str:
                data = payload[k]
                data = data.replace('{ip}', ip)
                data = data.replace('{status}', status)
                data = data.replace('{user}', user or '')
                data = data.replace('{date}', datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S'))
                payload[k] = data
        return payload

    def call(self, payload):
        ''' Sends the notification to the HTTP server. Returns the response, or None if disabled or failed. '''
        url = self.settings['Notify-URL']
        if url == '':
            # Do not even bother if the URL was not set. Consider it deactivated.
            return None
        timeout = self.settings['Notify-Timeout']

        try:
            if self.settings['Notify-HTTP-Method'] == 'POST':
                response = self.session.post(url, data=payload, timeout=timeout)
            else:
                params = urllib.parse.urlencode(payload)
                fullurl = url + ('&' if '?' in url else '?') + params
                if len(fullurl) > 2048:
                    log('WARNING: generated HTTP GET URL is longer that 2048; depending on the web server this may be longer than supported.')
                    log('You may want to switch to HTTP POST if possible.')
                response = self.session.get(fullurl, timeout=timeout)
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            err('Notification to {0} failed: {1}'.format(url, e))
            return None

    def _notify(self, flag, ip, status, user=''):
        if self.settings[flag] != True:
            return None
        return self.call(self.format_payload(ip, status, user))

    def login_success(self, ip, user):
        ''' Notify when an IP logged in with a valid code. '''
        return self._notify('Notify-On-Login-Success', ip, 'logged in', user)

    def login_failure(self, ip):
        ''' Notify when an IP submitted a bad code. '''
        return self._notify('Notify-On-Login-Failure', ip, 'failed to log in')

    def session_close(self, ip):
        ''' Notify when an expired session is swept away. '''
        return self._notify('Notify-On-Session-Close', ip, 'session expired')
