import argparse
import enum
import ipaddress
import logging
import os
import re
import socket
import struct
import sys
from collections import namedtuple

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from scapy.all import DHCP, mac2str

# systemd-resolved keeps the "real" upstream servers in this file
RESOLV_CONF = '/run/systemd/resolve/resolv.conf'
LOCALTIME = '/etc/localtime'

USEC_PER_SEC = 1000000
DEFAULT_LEASE_TIME = 3600
DEFAULT_MAX_LEASE_TIME = 12 * 3600

# Client identifier type tag for "hardware address follows" (RFC 2132)
CLIENT_ID_HWADDR = 0x01

logger = logging.getLogger(__name__)

class ServiceCategory(enum.Enum):
    '''Server lists a DHCPv4 server can advertise. Declaration order is the
    order in which they are provisioned.'''
    DNS = 'DNS'
    NTP = 'NTP'
    SIP = 'SIP'
    POP3 = 'POP3'
    SMTP = 'SMTP'
    LPR = 'LPR'

# DHCP option code carrying each server list
SERVICE_OPTION_CODES = {
    ServiceCategory.DNS: 6,
    ServiceCategory.NTP: 42,
    ServiceCategory.SIP: 120,
    ServiceCategory.POP3: 70,
    ServiceCategory.SMTP: 69,
    ServiceCategory.LPR: 9,
}

# Flag on the uplink's own network config that decides whether its lease
# (and, for NTP and SIP, its own list) may be borrowed. Categories without an
# entry are always borrowed.
UPLINK_LEASE_GATES = {
    ServiceCategory.DNS: 'dhcp_use_dns',
    ServiceCategory.NTP: 'dhcp_use_ntp',
    ServiceCategory.SIP: 'dhcp_use_sip',
}

TIMESPAN_UNITS = {
    'us': 1, 'usec': 1,
    'ms': 1000, 'msec': 1000,
    '': USEC_PER_SEC, 's': USEC_PER_SEC, 'sec': USEC_PER_SEC,
    'min': 60 * USEC_PER_SEC, 'm': 60 * USEC_PER_SEC,
    'h': 3600 * USEC_PER_SEC, 'hr': 3600 * USEC_PER_SEC,
    'd': 86400 * USEC_PER_SEC,
}

BOOLEAN_VALUES = {
    '1': True, 'yes': True, 'y': True, 'true': True, 't': True, 'on': True,
    '0': False, 'no': False, 'n': False, 'false': False, 'f': False,
    'off': False,
}

DHCPOption = namedtuple('DHCPOption', ['code', 'data'])
StaticLease = namedtuple('StaticLease', ['client_id', 'address'])

class DHCPServerError(Exception):
    '''The server engine rejected an operation.'''

class AlreadyExistsError(DHCPServerError):
    '''An option, vendor option or static lease with this key is already set.
    Re-applying the same configuration is expected to hit this.'''

class TimezoneError(OSError):
    pass

class ProvisioningError(RuntimeError):
    '''Fatal failure while configuring the DHCPv4 server of a link. The
    engine is left in whatever state it reached.'''
    def __init__(self, link, step, message):
        super().__init__(f'{link}: {message}')
        self.link = link
        self.step = step

def accept_address(address):
    '''Returns True if the address may be handed out to clients: it must be
    IPv4, not 0.0.0.0 and not in 127.0.0.0/8.'''
    if not isinstance(address, ipaddress.IPv4Address): return False
    return not (address.is_unspecified or address.is_loopback)

def filter_addresses(candidates):
    '''Parses (if needed) and filters candidates, keeping only addresses that
    pass accept_address(). Unparseable strings are dropped.'''
    accepted = []
    for candidate in candidates:
        if isinstance(candidate, str):
            try: candidate = ipaddress.ip_address(candidate.strip())
            except ValueError: continue
        if accept_address(candidate):
            accepted.append(candidate)
    return accepted

def parse_scoped_address(word):
    '''
    Parses "ADDRESS[%SCOPE][#NAME]" as found in resolv.conf and returns the
    bare address. Raises ValueError if the address part is malformed.
    '''
    address = word.split('#', 1)[0].split('%', 1)[0]
    if address.startswith('[') and address.endswith(']'):
        address = address[1:-1]
    return ipaddress.ip_address(address)

def parse_server_list(value, key='servers'):
    '''Parses a whitespace separated list of IPv4 addresses. Malformed tokens
    are logged and skipped.'''
    servers = []
    for word in value.split():
        try:
            servers.append(ipaddress.IPv4Address(word))
        except ValueError:
            logger.warning(f'⚠️ Failed to parse {key}= address "{word}", '
                           f'ignoring.')
    return servers

class ResolvConfFallback:
    '''
    Reads the upstream nameservers from a resolv.conf style file. Only used
    for DNS, and only when no better source is known.
    '''
    def __init__(self, path=RESOLV_CONF):
        self.path = path

    def resolve(self):
        addresses = []
        try:
            # A stray undecodable byte only spoils its own line
            f = open(self.path, 'r', errors='replace')
        except FileNotFoundError:
            return addresses
        except OSError as e:
            logger.warning(f'⚠️ Failed to open {self.path}: {e}')
            return addresses

        with f:
            try:
                for line in f:
                    line = line.strip()
                    if not line or line[0] in '#;': continue
                    words = line.split()
                    if words[0] != 'nameserver': continue
                    addresses.extend(self.parse_nameservers(words[1:]))
            except OSError as e:
                logger.warning(f'⚠️ Failed to read {self.path}: {e}')
                return []
        return addresses

    def parse_nameservers(self, words):
        found = []
        for word in words:
            try:
                address = parse_scoped_address(word)
            except ValueError:
                logger.warning(f'⚠️ Failed to parse DNS server address '
                               f'"{word}" in {self.path}, ignoring.')
                continue
            if accept_address(address):
                found.append(address)
        return found

def client_id_from_hwaddr(hwaddr):
    '''
    Builds the client identifier for a MAC based static lease: the hardware
    address type tag followed by the 6 address bytes. Accepts
    "aa:bb:cc:dd:ee:ff", "aa-bb-cc-dd-ee-ff" and "aabb.ccdd.eeff".
    '''
    mac = hwaddr.strip().lower()
    if re.match(r'[0-9a-f]{4}(\.[0-9a-f]{4}){2}$', mac):
        plain = mac.replace('.', '')
        mac = ':'.join(plain[i:i + 2] for i in range(0, 12, 2))
    mac = mac.replace('-', ':')
    if not re.match(r'[0-9a-f]{2}([:][0-9a-f]{2}){5}$', mac):
        raise ValueError(f'Not a valid MAC address: {hwaddr}')
    return bytes([CLIENT_ID_HWADDR]) + mac2str(mac)

class StaticLeaseTable:
    '''
    Reserved addresses keyed by client identifier. Keys are unique and
    iteration follows the order in which identifiers were first inserted.
    '''
    def __init__(self):
        self.leases = {}

    def __len__(self):
        return len(self.leases)

    def __iter__(self):
        return iter(list(self.leases.values()))

    def __contains__(self, client_id):
        return client_id in self.leases

    def get(self, client_id):
        return self.leases.get(client_id)

    def clear(self):
        self.leases.clear()

    def upsert(self, client_id, address):
        '''Inserts a lease, replacing the address of an existing entry with
        the same identifier.'''
        address = ipaddress.IPv4Address(address)
        self.leases[bytes(client_id)] = StaticLease(bytes(client_id), address)
        return self.leases[bytes(client_id)]

    def iterate(self):
        return list(self.leases.values())

    def assign(self, value, source=None):
        '''
        Applies one "StaticLease=<hardware-address> <IPv4-address>" setting.
        An empty value clears the table. Invalid values are logged and leave
        the table unchanged. Returns the stored lease, or None.
        '''
        where = f'{source}: ' if source else ''
        words = value.split()
        if not words:
            self.clear()
            return None
        try:
            client_id = client_id_from_hwaddr(words[0])
        except ValueError:
            logger.error(f'❌ {where}Not a valid MAC address, ignoring '
                         f'assignment: {words[0]}')
            return None
        if len(words) < 2:
            logger.error(f'❌ {where}Invalid IP address, ignoring '
                         f'assignment: {value}')
            return None
        try:
            return self.upsert(client_id, words[1])
        except ValueError:
            logger.error(f'❌ {where}Failed to parse DHCPv4 IPv4 address '
                         f'data, ignoring assignment: {words[1]}')
            return None

class ServiceSettings:
    '''Per category server settings: whether to advertise the category at
    all, and the operator supplied list that overrides every other source.'''
    def __init__(self, emit=True, servers=None):
        self.emit = emit
        self.servers = list(servers or [])

    def __repr__(self):
        return f'ServiceSettings(emit={self.emit}, servers={self.servers})'

class DHCPServerConfig:
    '''The [DHCPServer] settings of a link.'''
    def __init__(self):
        self.pool_offset = 0
        self.pool_size = 0
        self.default_lease_time_usec = 0
        self.max_lease_time_usec = 0
        self.emit_router = True
        self.emit_timezone = True
        self.timezone = None
        self.services = {c: ServiceSettings() for c in ServiceCategory}
        self.options = {}         # code -> DHCPOption
        self.vendor_options = {}  # code -> DHCPOption
        self.static_leases = StaticLeaseTable()

class LinkNetwork:
    '''
    The network configuration of a managed link, as far as this module
    cares: its own server lists (DNS already parsed, the others as strings),
    the DHCP client flags deciding which lease data may be used, and its
    DHCP server settings.
    '''
    def __init__(self, dns=None, ntp=None, sip=None, pop3=None, smtp=None,
                 lpr=None, dhcp_use_dns=True, dhcp_use_ntp=True,
                 dhcp_use_sip=True, dhcp_server=None):
        self.dns = list(dns or [])
        self.ntp = list(ntp or [])
        self.sip = list(sip or [])
        self.pop3 = list(pop3 or [])
        self.smtp = list(smtp or [])
        self.lpr = list(lpr or [])
        self.dhcp_use_dns = dhcp_use_dns
        self.dhcp_use_ntp = dhcp_use_ntp
        self.dhcp_use_sip = dhcp_use_sip
        self.dhcp_server = dhcp_server or DHCPServerConfig()

    def get_servers(self, category):
        return list(getattr(self, category.name.lower()))

class DHCPLease:
    '''Server lists received by the DHCP client of a link.'''
    def __init__(self, servers=None):
        self.servers = {c: list(v) for c, v in (servers or {}).items()}

    def get_servers(self, category):
        return list(self.servers.get(category, []))

def parse_boolean(value):
    try: return BOOLEAN_VALUES[value.strip().lower()]
    except KeyError: raise ValueError(f'Not a boolean: "{value}"') from None

def parse_timespan(value):
    '''Parses "90", "90s", "30min", "1h 30min" ... into microseconds. No unit
    means seconds; several number/unit pairs are summed.'''
    text = value.strip().lower()
    if not re.fullmatch(r'(\d+(?:\.\d+)?\s*[a-z]*\s*)+', text):
        raise ValueError(f'Not a valid time span: "{value}"')
    usec = 0
    for number, unit in re.findall(r'(\d+(?:\.\d+)?)\s*([a-z]*)', text):
        if unit not in TIMESPAN_UNITS:
            raise ValueError(f'Unknown time unit "{unit}" in "{value}"')
        usec += float(number) * TIMESPAN_UNITS[unit]
    return int(round(usec))

def parse_dhcp_option(value):
    '''Parses "CODE,TYPE,VALUE" into a DHCPOption with an encoded payload.'''
    parts = value.split(',', 2)
    if len(parts) != 3:
        raise ValueError('Format must be CODE,TYPE,VALUE')

    code = int(parts[0])
    if not 1 <= code <= 254:
        raise ValueError(f'Option code {code} out of range 1..254')
    dtype = parts[1].strip().lower()
    val = parts[2]

    try:
        if dtype == 'ip':
            encoded_val = ipaddress.IPv4Address(val.strip()).packed
        elif dtype == 'ips':
            # Comma-separated list of IPs
            encoded_val = b''.join(ipaddress.IPv4Address(ip.strip()).packed
                                   for ip in val.split(','))
        elif dtype in ('str', 'string'):
            encoded_val = val.encode('utf-8')
        elif dtype in ('int8', 'uint8'):
            encoded_val = struct.pack('!B', int(val))
        elif dtype in ('int16', 'uint16'):
            encoded_val = struct.pack('!H', int(val))
        elif dtype in ('int32', 'uint32'):
            encoded_val = struct.pack('!I', int(val))
        elif dtype == 'hex':
            encoded_val = bytes.fromhex(val.replace(':', '').replace(' ', ''))
        else:
            raise ValueError(f'Unknown type "{dtype}"')
    except struct.error as e:
        raise ValueError(f'Value "{val}" does not fit {dtype}: {e}') from e

    if len(encoded_val) > 255:
        raise ValueError(f'Option {code} payload longer than 255 bytes')
    return DHCPOption(code, encoded_val)

SERVER_LIST_KEYS = {
    'DNS': ServiceCategory.DNS,
    'NTP': ServiceCategory.NTP,
    'SIP': ServiceCategory.SIP,
    'POP3Servers': ServiceCategory.POP3,
    'SMTPServers': ServiceCategory.SMTP,
    'LPRServers': ServiceCategory.LPR,
}
EMIT_KEYS = {f'Emit{c.value}': c for c in ServiceCategory}

def apply_setting(config, key, value, source=None):
    '''
    Applies one [DHCPServer] key/value pair to a DHCPServerConfig. Bad values
    and unknown keys are logged and ignored. Returns True if the setting was
    applied.
    '''
    where = f'{source}: ' if source else ''
    try:
        if key in SERVER_LIST_KEYS:
            config.services[SERVER_LIST_KEYS[key]].servers.extend(
                parse_server_list(value, key))
        elif key in EMIT_KEYS:
            config.services[EMIT_KEYS[key]].emit = parse_boolean(value)
        elif key == 'StaticLease':
            if value.strip():
                return config.static_leases.assign(value, source) is not None
            config.static_leases.clear()
        elif key == 'PoolOffset':
            config.pool_offset = int(value)
        elif key == 'PoolSize':
            config.pool_size = int(value)
        elif key == 'DefaultLeaseTimeSec':
            config.default_lease_time_usec = parse_timespan(value)
        elif key == 'MaxLeaseTimeSec':
            config.max_lease_time_usec = parse_timespan(value)
        elif key == 'EmitRouter':
            config.emit_router = parse_boolean(value)
        elif key == 'EmitTimezone':
            config.emit_timezone = parse_boolean(value)
        elif key == 'Timezone':
            tz = value.strip()
            if tz and not valid_timezone(tz):
                raise ValueError(f'Not a valid timezone: "{tz}"')
            config.timezone = tz or None
        elif key in ('SendOption', 'SendVendorOption'):
            options = config.options if key == 'SendOption' \
                else config.vendor_options
            if not value.strip():
                options.clear()
                return True
            option = parse_dhcp_option(value)
            options[option.code] = option
        else:
            logger.warning(f'⚠️ {where}Unknown setting "{key}", ignoring.')
            return False
    except ValueError as e:
        logger.error(f'❌ {where}Failed to parse {key}="{value}", '
                     f'ignoring: {e}')
        return False
    return True

def split_assignment(line):
    key, sep, value = line.partition('=')
    if not sep: raise ValueError(f'Expected KEY=VALUE, got "{line}"')
    return key.strip(), value.strip()

def load_network_file(path):
    '''
    Reads a .network style file into a LinkNetwork. Keys in [DHCPServer] (or
    before the first section) go to apply_setting(), [Network] provides the
    link's own server lists and [DHCPv4] the Use* flags.
    '''
    network = LinkNetwork()
    section = 'DHCPServer'
    with open(path, 'r') as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line[0] in '#;': continue
            source = f'{path}:{lineno}'
            if line.startswith('[') and line.endswith(']'):
                section = line[1:-1].strip()
                continue
            try:
                key, value = split_assignment(line)
            except ValueError as e:
                logger.warning(f'⚠️ {source}: {e}, ignoring.')
                continue

            if section == 'DHCPServer':
                apply_setting(network.dhcp_server, key, value, source)
            elif section == 'Network':
                apply_network_setting(network, key, value, source)
            elif section == 'DHCPv4':
                apply_client_setting(network, key, value, source)
            else:
                logger.debug(f'{source}: Skipping [{section}] {key}=')
    return network

def apply_network_setting(network, key, value, source):
    if key == 'DNS':
        for word in value.split():
            try: network.dns.append(parse_scoped_address(word))
            except ValueError:
                logger.warning(f'⚠️ {source}: Failed to parse DNS server '
                               f'address "{word}", ignoring.')
    elif key in ('NTP', 'SIP', 'POP3', 'SMTP', 'LPR'):
        getattr(network, key.lower()).extend(value.split())

def apply_client_setting(network, key, value, source):
    attr = {'UseDNS': 'dhcp_use_dns', 'UseNTP': 'dhcp_use_ntp',
            'UseSIP': 'dhcp_use_sip'}.get(key)
    if not attr: return
    try:
        setattr(network, attr, parse_boolean(value))
    except ValueError as e:
        logger.error(f'❌ {source}: {e}, ignoring.')

LEASE_FILE_KEYS = {
    'DNS': ServiceCategory.DNS,
    'NTP': ServiceCategory.NTP,
    'SIP': ServiceCategory.SIP,
    'POP3_SERVERS': ServiceCategory.POP3,
    'SMTP_SERVERS': ServiceCategory.SMTP,
    'LPR_SERVERS': ServiceCategory.LPR,
}

def load_lease_file(path):
    '''Reads the server lists out of a networkd style DHCP lease file.'''
    servers = {}
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line: continue
            key, value = split_assignment(line)
            category = LEASE_FILE_KEYS.get(key)
            if not category: continue
            for word in value.split():
                try:
                    servers.setdefault(category, []).append(
                        ipaddress.ip_address(word))
                except ValueError:
                    logger.warning(f'⚠️ {path}: Ignoring malformed {key} '
                                   f'entry "{word}"')
    return DHCPLease(servers)

def valid_timezone(tz):
    if not re.match(r'[A-Za-z0-9_+\-]+(/[A-Za-z0-9_+\-]+)*$', tz): return False
    return len(tz) <= 255

def get_host_timezone(path=LOCALTIME):
    '''Returns the tz database name /etc/localtime points to.'''
    try:
        target = os.readlink(path)
    except OSError as e:
        raise TimezoneError(f'Cannot resolve {path}: {e}') from e
    _, sep, tz = target.partition('zoneinfo/')
    if not sep or not valid_timezone(tz):
        raise TimezoneError(f'{path} does not point into a zoneinfo '
                            f'database: {target}')
    return tz

class Link:
    def __init__(self, name, ifindex=0, network=None, dhcp_lease=None,
                 static_addresses=None, pool_addresses=None,
                 has_default_route=False):
        self.name = name
        self.ifindex = ifindex
        self.network = network
        self.dhcp_lease = dhcp_lease
        self.static_addresses = list(static_addresses or [])
        self.pool_addresses = list(pool_addresses or [])
        self.has_default_route = has_default_route

    def __repr__(self):
        return f'Link({self.name!r}, ifindex={self.ifindex})'

class LinkManager:
    '''Registry of known links. The uplink of a link is any other link
    carrying the IPv4 default route.'''
    def __init__(self, links=None):
        self.links = {}
        for link in links or []: self.add(link)

    def add(self, link):
        self.links[link.name] = link
        return link

    def get(self, name):
        return self.links.get(name)

    def find_uplink(self, link):
        for candidate in self.links.values():
            if candidate is link or candidate.name == link.name: continue
            if candidate.has_default_route: return candidate
        return None

class NetlinkLinkManager(LinkManager):
    '''
    Builds the link registry from the kernel. Network configs and uplink
    leases are attached by interface name; links without a config are
    treated as unmanaged.
    '''
    def __init__(self, networks=None, leases=None):
        super().__init__()
        self.networks = networks or {}
        self.leases = leases or {}
        self.refresh()

    def refresh(self):
        self.links = {}
        ipr = IPRoute()
        try:
            # Default routes have no destination (dst_len 0)
            default_oifs = set()
            for r in ipr.get_routes(family=socket.AF_INET, dst_len=0):
                oif = dict(r['attrs']).get('RTA_OIF')
                if oif: default_oifs.add(oif)

            for msg in ipr.get_links():
                name = dict(msg['attrs']).get('IFLA_IFNAME')
                if not name: continue
                idx = msg['index']
                self.add(Link(name, idx,
                              network=self.networks.get(name),
                              dhcp_lease=self.leases.get(name),
                              static_addresses=self.link_addresses(ipr, idx),
                              has_default_route=idx in default_oifs))
        except NetlinkError as e:
            raise RuntimeError(f'Error inspecting links: {e}') from e
        finally:
            ipr.close()
        logger.debug(f'🔎 Found links: {", ".join(self.links)}')

    def link_addresses(self, ipr, idx):
        addresses = []
        for addr in ipr.get_addr(index=idx, family=socket.AF_INET):
            local_ip = None
            for attr, value in addr['attrs']:
                if attr == 'IFA_LOCAL':
                    local_ip = value
                    break
            if not local_ip: continue
            addresses.append(ipaddress.ip_interface(
                f'{local_ip}/{addr["prefixlen"]}'))
        return addresses

class UplinkSelector:
    '''Looks up the uplink of a link once per provisioning pass.'''
    _UNSET = object()

    def __init__(self, manager):
        self.manager = manager
        self.uplink = self._UNSET

    def find(self, link):
        if self.uplink is self._UNSET:
            self.uplink = self.manager.find_uplink(link)
        return self.uplink

class ServiceListResolver:
    '''
    Decides which servers to advertise for a category. Precedence:
    explicit config, then the uplink's own config plus its lease, then
    (DNS only) the resolv.conf fallback.
    '''
    def __init__(self, uplinks, resolv_conf=None):
        self.uplinks = uplinks
        self.resolv_conf = resolv_conf or ResolvConfFallback()

    def resolve(self, link, category):
        settings = link.network.dhcp_server.services[category]

        # Operator supplied addresses are used as they are
        if settings.servers: return list(settings.servers)
        if not settings.emit: return []

        uplink = self.uplinks.find(link)
        if uplink and uplink.network:
            return self.collect_from_uplink(uplink, category)

        if category is ServiceCategory.DNS:
            if not uplink:
                logger.info(f'🔎 {link.name}: No uplink found, using '
                            f'{self.resolv_conf.path} for DNS')
            return self.resolv_conf.resolve()

        if not uplink:
            logger.info(f'{link.name}: Not emitting {category.value} on '
                        f'link, couldn\'t find suitable uplink.')
        return []

    def collect_from_uplink(self, uplink, category):
        logger.debug(f'{uplink.name}: Copying {category.value} servers from '
                     f'link')
        network = uplink.network
        gate = UPLINK_LEASE_GATES.get(category)
        use_uplink = getattr(network, gate) if gate else True

        addresses = []
        # DNS servers are stored parsed and are always taken
        if category is ServiceCategory.DNS:
            addresses.extend(filter_addresses(network.dns))
        elif use_uplink:
            addresses.extend(filter_addresses(network.get_servers(category)))

        if use_uplink and uplink.dhcp_lease:
            addresses.extend(filter_addresses(
                uplink.dhcp_lease.get_servers(category)))
        return addresses

class DHCPServer:
    '''
    In-process DHCPv4 server engine. It holds what provisioning pushes into
    it and renders the advertised settings as scapy DHCP options.
    '''
    def __init__(self, ifname=None):
        self.ifname = ifname
        self.address = None
        self.network = None
        self.pool_offset = 0
        self.pool_size = 0
        self.default_lease_time = DEFAULT_LEASE_TIME
        self.max_lease_time = DEFAULT_MAX_LEASE_TIME
        self.servers = {}
        self.emit_router = False
        self.timezone = None
        self.options = {}
        self.vendor_options = {}
        self.static_leases = {}
        self.running = False

    def configure_pool(self, address, prefixlen, offset=0, size=0):
        try:
            address = ipaddress.IPv4Address(address)
            network = ipaddress.IPv4Network((address, prefixlen), strict=False)
        except ValueError as e:
            raise DHCPServerError(f'Invalid pool address: {e}') from e
        if offset < 0 or size < 0:
            raise DHCPServerError('Pool offset and size must not be negative')

        server_off = int(address) - int(network.network_address)
        broadcast_off = network.num_addresses - 1
        if server_off == 0:
            raise DHCPServerError(f'Server address {address} is the subnet '
                                  f'address of {network}')
        if server_off == broadcast_off:
            raise DHCPServerError(f'Server address {address} is the '
                                  f'broadcast address of {network}')

        # 0 means "right after the subnet address"
        if offset == 0: offset = 1
        size_max = broadcast_off + 1 - offset - 1
        if size_max < 1:
            raise DHCPServerError(f'Pool offset {offset} leaves no addresses '
                                  f'in {network}')
        if size == 0: size = size_max
        elif size > size_max:
            raise DHCPServerError(f'Pool size {size} exceeds {size_max} '
                                  f'addresses available in {network}')

        self.address = address
        self.network = network
        self.pool_offset = offset
        self.pool_size = size

    def pool_addresses(self):
        if not self.network: return []
        start = self.network.network_address + self.pool_offset
        return [start + i for i in range(self.pool_size)
                if start + i != self.address]

    def set_default_lease_time(self, seconds):
        if seconds <= 0:
            raise DHCPServerError(f'Invalid default lease time: {seconds}')
        self.default_lease_time = seconds

    def set_max_lease_time(self, seconds):
        if seconds <= 0:
            raise DHCPServerError(f'Invalid maximum lease time: {seconds}')
        self.max_lease_time = seconds

    def set_servers(self, category, addresses):
        if category not in SERVICE_OPTION_CODES:
            raise DHCPServerError(f'Unknown server category: {category}')
        addresses = list(addresses)
        for a in addresses:
            if not isinstance(a, ipaddress.IPv4Address):
                raise DHCPServerError(f'Not an IPv4 address: {a!r}')
        if len(addresses) * 4 > 254:
            raise DHCPServerError(f'Too many {category.value} servers')
        self.servers[category] = addresses

    def set_emit_router(self, enabled):
        self.emit_router = bool(enabled)

    def set_timezone(self, tz):
        if not tz or not valid_timezone(tz):
            raise DHCPServerError(f'Invalid timezone: "{tz}"')
        self.timezone = tz

    def add_option(self, option):
        if option.code in self.options:
            raise AlreadyExistsError(f'Option {option.code} already set')
        self.options[option.code] = option

    def add_vendor_option(self, option):
        if option.code in self.vendor_options:
            raise AlreadyExistsError(f'Vendor option {option.code} already '
                                     f'set')
        self.vendor_options[option.code] = option

    def add_static_lease(self, lease):
        if lease.client_id in self.static_leases:
            raise AlreadyExistsError(f'Static lease for '
                                     f'{lease.client_id.hex()} already set')
        self.static_leases[lease.client_id] = lease

    def is_running(self):
        return self.running

    def start(self):
        if not self.network:
            raise DHCPServerError('Address pool not configured')
        self.running = True
        logger.info(f'🚀 DHCP Server active on "{self.ifname}"')
        logger.info(f'   IP: {self.address} | Pool: {self.network}')

    def reply_options(self):
        '''The options every OFFER/ACK carries, in scapy's list format.'''
        options = [('lease_time', self.default_lease_time)]
        if self.emit_router and self.address:
            options.append(('router', str(self.address)))
        for category, code in SERVICE_OPTION_CODES.items():
            addresses = self.servers.get(category)
            if not addresses: continue
            payload = b''.join(a.packed for a in addresses)
            # RFC 3361: encoding byte 1 means a list of IPv4 addresses
            if category is ServiceCategory.SIP: payload = b'\x01' + payload
            options.append((code, payload))
        if self.timezone:
            options.append((101, self.timezone.encode('utf-8')))
        if self.vendor_options:
            options.append((43, b''.join(
                bytes([o.code, len(o.data)]) + o.data
                for o in self.vendor_options.values())))
        options.extend((o.code, o.data) for o in self.options.values())
        return options

    def dhcp_layer(self):
        return DHCP(options=self.reply_options() + ['end'])

class ProvisionState(enum.Enum):
    IDLE = 'idle'
    CONFIGURING_POOL = 'configuring-pool'
    CONFIGURING_LEASE_TIMES = 'configuring-lease-times'
    CONFIGURING_SERVICE_LISTS = 'configuring-service-lists'
    CONFIGURING_ROUTER_AND_TIMEZONE = 'configuring-router-and-timezone'
    CONFIGURING_OPTIONS = 'configuring-options'
    CONFIGURING_STATIC_LEASES = 'configuring-static-leases'
    STARTING = 'starting'
    RUNNING = 'running'
    FAILED = 'failed'

def find_server_address(link):
    '''
    The address the server runs on: the first statically configured,
    non-null IPv4 address, else the first IPv4 address from the link's pool.
    '''
    for address in link.static_addresses:
        if address.version != 4 or address.ip.is_unspecified: continue
        return address
    for address in link.pool_addresses:
        if address.version == 4: return address
    return None

def usec_to_sec(usec):
    '''Whole seconds, rounded up.'''
    return (usec + USEC_PER_SEC - 1) // USEC_PER_SEC

class ServerProvisioner:
    '''
    Pushes a link's DHCP server configuration into the server engine and
    starts it. Fatal failures raise ProvisioningError and abort the pass;
    everything pushed until then stays in the engine.
    '''
    def __init__(self, link, server, link_manager, resolv_conf=None,
                 get_timezone=get_host_timezone):
        self.link = link
        self.server = server
        self.link_manager = link_manager
        self.resolv_conf = resolv_conf or ResolvConfFallback()
        self.get_timezone = get_timezone
        self.state = ProvisionState.IDLE

    def fail(self, message, error=None):
        step = self.state
        self.state = ProvisionState.FAILED
        detail = f'{message}: {error}' if error else message
        logger.error(f'❌ {self.link.name}: {detail}')
        raise ProvisioningError(self.link.name, step, detail) from error

    def provision(self):
        if not self.link.network:
            self.fail('Link has no network configuration')
        config = self.link.network.dhcp_server

        self.state = ProvisionState.CONFIGURING_POOL
        self.configure_pool(config)

        self.state = ProvisionState.CONFIGURING_LEASE_TIMES
        self.configure_lease_times(config)

        self.state = ProvisionState.CONFIGURING_SERVICE_LISTS
        self.configure_service_lists()

        self.state = ProvisionState.CONFIGURING_ROUTER_AND_TIMEZONE
        try:
            self.server.set_emit_router(config.emit_router)
        except DHCPServerError as e:
            self.fail('Failed to set router emission for DHCP server', e)
        if config.emit_timezone:
            self.configure_timezone(config)

        self.state = ProvisionState.CONFIGURING_OPTIONS
        self.push_all(self.server.add_option, config.options.values(),
                      'Failed to set DHCPv4 option')
        self.push_all(self.server.add_vendor_option,
                      config.vendor_options.values(),
                      'Failed to set DHCPv4 vendor option')

        self.state = ProvisionState.CONFIGURING_STATIC_LEASES
        self.push_all(self.server.add_static_lease, config.static_leases,
                      'Failed to set DHCPv4 static lease for DHCP server')

        self.state = ProvisionState.STARTING
        if not self.server.is_running():
            try:
                self.server.start()
            except DHCPServerError as e:
                self.fail('Could not start DHCPv4 server instance', e)

        self.state = ProvisionState.RUNNING
        return self.server

    def configure_pool(self, config):
        address = find_server_address(self.link)
        if not address:
            self.fail('Failed to find suitable address for DHCPv4 server '
                      'instance.')
        # Use the server address' subnet as the pool
        try:
            self.server.configure_pool(address.ip, address.network.prefixlen,
                                       config.pool_offset, config.pool_size)
        except DHCPServerError as e:
            self.fail('Failed to configure address pool for DHCPv4 server '
                      'instance', e)

    def configure_lease_times(self, config):
        if config.max_lease_time_usec > 0:
            try:
                self.server.set_max_lease_time(
                    usec_to_sec(config.max_lease_time_usec))
            except DHCPServerError as e:
                self.fail('Failed to set maximum lease time for DHCPv4 '
                          'server instance', e)
        if config.default_lease_time_usec > 0:
            try:
                self.server.set_default_lease_time(
                    usec_to_sec(config.default_lease_time_usec))
            except DHCPServerError as e:
                self.fail('Failed to set default lease time for DHCPv4 '
                          'server instance', e)

    def configure_service_lists(self):
        resolver = ServiceListResolver(UplinkSelector(self.link_manager),
                                       self.resolv_conf)
        for category in ServiceCategory:
            servers = resolver.resolve(self.link, category)
            if not servers: continue
            try:
                self.server.set_servers(category, servers)
            except DHCPServerError as e:
                logger.warning(f'⚠️ {self.link.name}: Failed to set '
                               f'{category.value} servers for DHCP server, '
                               f'ignoring: {e}')

    def configure_timezone(self, config):
        tz = config.timezone
        if not tz:
            try:
                tz = self.get_timezone()
            except TimezoneError as e:
                self.fail('Failed to determine timezone', e)
        try:
            self.server.set_timezone(tz)
        except DHCPServerError as e:
            self.fail('Failed to set timezone for DHCP server', e)

    def push_all(self, push, items, message):
        for item in items:
            try:
                push(item)
            except AlreadyExistsError:
                continue
            except DHCPServerError as e:
                self.fail(message, e)

def parse_name_file(item):
    name, sep, path = item.partition('=')
    if not sep or not name or not path:
        raise ValueError(f'Format must be IFNAME=FILE, got "{item}"')
    return name.strip(), path.strip()

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Provision the DHCPv4 server of a link, borrowing '
                    'server lists from its uplink',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument(
        '-i', '--interface', required=True,
        help='Link whose DHCP server is provisioned.')
    parser.add_argument(
        '-c', '--config',
        help='.network file of the link ([DHCPServer] section).')
    parser.add_argument(
        '--uplink-config', action='append', default=[],
        help='IFNAME=FILE .network file of another link. Can be repeated.')
    parser.add_argument(
        '--uplink-lease', action='append', default=[],
        help='IFNAME=FILE DHCP lease file of another link. Can be repeated.')
    parser.add_argument(
        '--resolv-conf', default=RESOLV_CONF,
        help='Nameserver file used when no uplink provides DNS.')
    parser.add_argument(
        '--set', action='append', default=[], metavar='KEY=VALUE',
        help='Override a [DHCPServer] setting. Can be repeated.')
    for key in SERVER_LIST_KEYS:
        parser.add_argument(
            f'--{key.replace("Servers", "").lower()}', action='append',
            default=[], dest=key,
            help=f'Explicit {key} list. Can be repeated.')
    parser.add_argument(
        '--static-lease', action='append', default=[],
        help='Reserve an address. Format: "aa:bb:cc:dd:ee:ff 10.0.0.5". '
             'Can be repeated.')
    parser.add_argument(
        '--dhcp-option', action='append', default=[],
        help='Add custom DHCP option. Format: CODE,TYPE,VALUE. Types: ip, '
             'ips, str, int8, int16, int32, hex.')
    parser.add_argument(
        '--vendor-option', action='append', default=[],
        help='Add vendor specific sub-option, same format as --dhcp-option.')
    parser.add_argument('--timezone', help='Timezone to advertise.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable debug logging.')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')

    try:
        network = load_network_file(args.config) if args.config \
            else LinkNetwork()
        networks = {args.interface: network}
        for item in args.uplink_config:
            name, path = parse_name_file(item)
            networks[name] = load_network_file(path)
        leases = {}
        for item in args.uplink_lease:
            name, path = parse_name_file(item)
            leases[name] = load_lease_file(path)
    except (OSError, ValueError) as e:
        logger.critical(f'⛔ Failed to load configuration: {e}')
        return 1

    settings = []
    for item in args.set:
        try: settings.append(split_assignment(item))
        except ValueError as e: logger.error(f'❌ --set: {e}, ignoring.')
    for key in SERVER_LIST_KEYS:
        settings.extend((key, v) for v in getattr(args, key))
    settings.extend(('StaticLease', v) for v in args.static_lease)
    settings.extend(('SendOption', v) for v in args.dhcp_option)
    settings.extend(('SendVendorOption', v) for v in args.vendor_option)
    if args.timezone: settings.append(('Timezone', args.timezone))
    for key, value in settings:
        apply_setting(network.dhcp_server, key, value, 'command line')

    try:
        manager = NetlinkLinkManager(networks, leases)
    except RuntimeError as e:
        logger.critical(f'⛔ {e}')
        return 1
    link = manager.get(args.interface)
    if not link:
        logger.critical(f'⛔ Interface "{args.interface}" does not exist.')
        return 1

    server = DHCPServer(args.interface)
    try:
        ServerProvisioner(link, server, manager,
                          ResolvConfFallback(args.resolv_conf)).provision()
    except ProvisioningError:
        return 1

    for option in server.reply_options():
        logger.info(f'   {option}')
    layer = server.dhcp_layer()
    logger.info(f'📦 Encoded DHCP options: {len(bytes(layer))} bytes')
    logger.debug(layer.show(dump=True))
    return 0

if __name__ == '__main__':
    sys.exit(main())
