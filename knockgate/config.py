''' Loading and checking the YAML configuration file. '''

import copy
import os
import re

import yaml       # pip: pyyaml

from knockgate import app_name

default_configuration_file = '/etc/knockgate.yaml'

# Dict containing the default configuration - overridden later by the YAML file
defaults = {}
defaults['ServerHost'] = '127.0.0.1'
defaults['ServerPort'] = 4302
defaults['ServerName'] = app_name
defaults['Server-Forwarded-IP-Header'] = 'X-Real-IP'
defaults['API-Authorize-Path'] = '/@authorize'
defaults['API-Login-Path'] = '/@login'
defaults['Login-Success-URL'] = '/'
defaults['Login-Rate-Limit-Times'] = 1
defaults['Login-Rate-Limit-Period'] = 5
defaults['Login-Reuses-TOTP'] = True
defaults['Session-Timeout'] = 1440
defaults['Session-Sweep-Interval'] = 3600
defaults['Users'] = []
defaults['Allowed'] = []
defaults['Denied'] = []

defaults['Notify'] = {}
defaults['Notify']['Notify-On-Login-Success'] = True
defaults['Notify']['Notify-On-Login-Failure'] = True
defaults['Notify']['Notify-On-Session-Close'] = False
defaults['Notify']['Notify-HTTP-Method'] = 'POST'
defaults['Notify']['Notify-URL'] = ''
defaults['Notify']['Notify-Timeout'] = 5
defaults['Notify']['Notify-HTTP-Form-Payload'] = {}
defaults['Notify']['Notify-HTTP-Form-Payload']['message'] = '{ip} {status}.'
defaults['Notify']['Notify-HTTP-Form-Payload']['priority'] = 3
defaults['Notify']['Notify-HTTP-Form-Payload']['title'] = 'Notification from ' + app_name

_paths = ('API-Authorize-Path', 'API-Login-Path')
_strings = ('ServerHost', 'ServerName', 'Server-Forwarded-IP-Header', 'Login-Success-URL')
_positive_ints = ('ServerPort', 'Login-Rate-Limit-Times', 'Login-Rate-Limit-Period', 'Session-Timeout')
_non_negative_ints = ('Session-Sweep-Interval',)
_booleans = ('Login-Reuses-TOTP',)
_lists = ('Users', 'Allowed', 'Denied')

_notify_booleans = ('Notify-On-Login-Success', 'Notify-On-Login-Failure', 'Notify-On-Session-Close')


class ConfigError(Exception):
    pass


def valid_path(path):
    ''' Checks if the path part of an URL (the part that comes after the domain) is valid. Requires a leading slash. '''
    url_regex = re.compile(r'^/[-a-zA-Z0-9._~:/@!$&\'()*+,;=%]*$')
    return url_regex.match(path)

def valid_url(url):
    ''' Checks if the provided URL is valid. '''
    url_regex = re.compile(r'^(?:http|https):\/\/[\w\-]+(?:\.[\w\-]+)*(?:\:[0-9]+)?(?:\/[^?]+)?(?:\?.*)?$')
    return url_regex.match(url)

def _is_int(value):
    # bool is an int subclass, "Session-Timeout: yes" must not pass as 1
    return type(value) is int

def _check_notify(section):
    if type(section) is not dict:
        raise ConfigError('Configuration error for Notify: should be a dict, not a {0}.'.format(type(section).__name__))

    notify = copy.deepcopy(defaults['Notify'])
    for k, value in section.items():
        if k in _notify_booleans:
            if type(value) is not bool:
                raise ConfigError('Configuration error for {0}: not true or false.'.format(k))
        elif k == 'Notify-URL':
            if type(value) is not str or (value != '' and not valid_url(value)):
                raise ConfigError('Configuration error for {0}: invalid URL.'.format(k))
        elif k == 'Notify-HTTP-Method':
            if value != 'GET' and value != 'POST':
                raise ConfigError('Configuration error for {0}: invalid method (accepted values are GET or POST).'.format(k))
        elif k == 'Notify-HTTP-Form-Payload':
            if type(value) is not dict:
                raise ConfigError('Configuration error for {0}: value is not a dict.'.format(k))
        elif k == 'Notify-Timeout':
            if not _is_int(value) or value <= 0:
                raise ConfigError('Configuration error for {0}: should be a positive int.'.format(k))
        else:
            raise ConfigError('Configuration error: unknown key Notify/{0}.'.format(k))
        notify[k] = value
    return notify

def check_configuration(data):
    ''' Validates the parsed YAML document and merges it over the defaults. Raises ConfigError on the first bad value. '''
    configuration = copy.deepcopy(defaults)
    if data is None:
        return configuration
    if type(data) is not dict:
        raise ConfigError('Configuration error: the file should hold a mapping, not a {0}.'.format(type(data).__name__))

    for k, value in data.items():
        if k in _paths:
            if type(value) is not str or not valid_path(value):
                raise ConfigError('Configuration error for {0}: {1!r} is an invalid path.'.format(k, value))
        elif k in _strings:
            if type(value) is not str or value == '':
                raise ConfigError('Configuration error for {0}: should be a non-empty string, not {1!r}.'.format(k, value))
        elif k in _positive_ints:
            if not _is_int(value) or value <= 0:
                raise ConfigError('Configuration error for {0}: should be a positive int, not {1!r}.'.format(k, value))
        elif k in _non_negative_ints:
            if not _is_int(value) or value < 0:
                raise ConfigError('Configuration error for {0}: should be zero or a positive int, not {1!r}.'.format(k, value))
        elif k in _booleans:
            if type(value) is not bool:
                raise ConfigError('Configuration error for {0}: should be a bool, not a {1}.'.format(k, type(value).__name__))
        elif k in _lists:
            if value is None:
                value = []
            if type(value) is not list:
                raise ConfigError('Configuration error for {0}: should be a list, not a {1}.'.format(k, type(value).__name__))
        elif k == 'Notify':
            value = _check_notify(value)
        else:
            raise ConfigError('Configuration error: unknown key {0}.'.format(k))
        configuration[k] = value

    if configuration['API-Authorize-Path'] == configuration['API-Login-Path']:
        raise ConfigError('Configuration error: API-Authorize-Path and API-Login-Path must differ.')

    return configuration

def check_filesystem(configuration_file):
    ''' Safeguards against improper filesystem rights: the file holds every TOTP secret. '''
    try:
        status = os.stat(configuration_file)
    except FileNotFoundError:
        raise ConfigError('Configuration file {0} does not exist.'.format(configuration_file))

    group_perms = (status.st_mode & 0o70) >> 3
    other_perms = status.st_mode & 0o7

    if group_perms & 0o4 or other_perms & 0o4:
        raise ConfigError('Your {0} file is readable by other users, and this potentially exposes your TOTP secrets. '
                          'To fix this, run `chmod go-rwx {0}` and try again.'.format(configuration_file))
    if group_perms & 0o2 or other_perms & 0o2:
        raise ConfigError('Your {0} file is writable by other users, and this potentially exposes this server for others to exploit. '
                          'To fix this, run `chmod go-rwx {0}` and try again.'.format(configuration_file))

def open_yaml(configuration_file):
    ''' Opens, parses and checks the configuration file. '''
    check_filesystem(configuration_file)
    try:
        with open(configuration_file, 'rb') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError('Unable to parse {0}: {1}'.format(configuration_file, e))
    except OSError as e:
        raise ConfigError('Unable to read {0}: {1}'.format(configuration_file, e))
    return check_configuration(data)
