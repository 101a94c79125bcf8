''' knockgate - TOTP login gate for reverse proxy sub-request authorization. '''

__version__ = '1.0.0'
app_name = 'knockgate'
