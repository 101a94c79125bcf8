''' Allow and deny rules: single addresses or CIDR networks. '''

import ipaddress

from knockgate.console import log, err


class Wildcard:
    ''' One allow/deny rule. Either an AddressWildcard or a NetworkWildcard, never both. '''

    def contains(self, ip):
        raise NotImplementedError


class AddressWildcard(Wildcard):

    def __init__(self, ip):
        self.ip = ip

    def contains(self, ip):
        # ipaddress equality: '::1' and '0:0::1' are the same host
        return ip == self.ip

    def __str__(self):
        return str(self.ip)

    def __repr__(self):
        return 'AddressWildcard({0!r})'.format(str(self.ip))


class NetworkWildcard(Wildcard):

    def __init__(self, net):
        self.net = net

    def contains(self, ip):
        return ip in self.net

    def __str__(self):
        return str(self.net)

    def __repr__(self):
        return 'NetworkWildcard({0!r})'.format(str(self.net))


def _normalize(ip):
    ''' IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) are compared as their IPv4 form. '''
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip

def parse_wildcard(text):
    ''' Parses "10.0.0.0/8" or "192.168.1.4" into a Wildcard. Returns None if it is neither. '''
    if not isinstance(text, str):
        return None
    text = text.strip()

    # CIDR first. Only a text without any prefix falls through to the bare IP form,
    # a malformed CIDR like "10.0.0.0/99" is not retried as an address.
    if '/' in text:
        try:
            net = ipaddress.ip_network(text, strict=False)
        except ValueError:
            return None
        if net.version == 6 and net.network_address.ipv4_mapped is not None and net.prefixlen >= 96:
            net = ipaddress.ip_network('{0}/{1}'.format(net.network_address.ipv4_mapped, net.prefixlen - 96))
        return NetworkWildcard(net)

    try:
        return AddressWildcard(_normalize(ipaddress.ip_address(text)))
    except ValueError:
        return None

def matches(address, wildcards):
    ''' True if address is covered by any of the wildcards. An unparsable address never matches. '''
    try:
        ip = _normalize(ipaddress.ip_address(address))
    except ValueError:
        return False

    for entry in wildcards:
        if entry.contains(ip):
            return True
    return False

def parse_wildcards(entries, label):
    ''' Builds a wildcard list out of configuration strings. Bad entries are logged and skipped. '''
    wildcards = []
    for entry in entries:
        wildcard = parse_wildcard(entry)
        if wildcard is None:
            err('Configuration error in {0} list: {1!r} is neither an IP nor an IP/CIDR network, skipping it.'.format(label, entry))
            continue
        wildcards.append(wildcard)

    if len(wildcards) > 0:
        log('{0} list:'.format(label))
        for wildcard in wildcards:
            log('- {0}'.format(wildcard))

    return tuple(wildcards)
