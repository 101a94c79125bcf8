''' `knockgate adduser NAME`: makes a new TOTP secret for an operator to put in the configuration. '''

import sys

import pyotp      # pip: pyotp
import qrcode     # pip: qrcode

from knockgate import app_name
from knockgate.validator import DIGITS, INTERVAL


def new_enrollment(username, issuer=app_name):
    ''' Returns an otpauth:// URL carrying a freshly generated secret for username. '''
    totp = pyotp.TOTP(pyotp.random_base32(), digits=DIGITS, interval=INTERVAL)
    return totp.provisioning_uri(name=username, issuer_name=issuer)

def adduser(username, issuer=app_name, out=None, console=None):
    ''' Prints a scannable QR code to the console and the YAML lines to paste in the Users list. '''
    out = out if out is not None else sys.stdout
    console = console if console is not None else sys.stderr

    url = new_enrollment(username, issuer)

    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_L, border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(out=console, invert=True)

    out.write('\nUsers:\n- {0}\n'.format(url))
    return url
