import datetime
import os
import sys


def _now():
    return datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')

def log(msg=''):
    ''' Logger function - writes to STDOUT. '''
    print(_now(), msg, flush=True)

def err(msg=''):
    ''' Logger function - writes to STDERR. '''
    print('{0} ** ERROR ** {1}'.format(_now(), msg), file=sys.stderr, flush=True)

def fatal(msg=''):
    ''' Logs to STDERR and kills the whole process, not only the calling thread.
    Only for broken invariants, where answering any further request could be wrong. '''
    err(msg)
    os._exit(2)
