import ipaddress

import pytest

from uplinkdhcp import (DHCPLease, DHCPServer, Link, LinkManager, LinkNetwork,
                        ResolvConfFallback, ServiceCategory)


def make_link(name="eth1", addresses=("10.0.0.1/24",), network=None, **kwargs):
    return Link(
        name,
        static_addresses=[ipaddress.ip_interface(a) for a in addresses],
        network=network if network is not None else LinkNetwork(),
        **kwargs,
    )


def make_uplink(name="wan0", network=None, lease=None):
    return Link(name, network=network, dhcp_lease=lease, has_default_route=True)


def lease_with(**servers):
    return DHCPLease(
        {
            ServiceCategory[key]: [ipaddress.ip_address(a) for a in value]
            for key, value in servers.items()
        }
    )


def ips(*addresses):
    return [ipaddress.IPv4Address(a) for a in addresses]


@pytest.fixture
def link():
    return make_link()


@pytest.fixture
def no_resolv_conf(tmp_path):
    return ResolvConfFallback(str(tmp_path / "missing-resolv.conf"))


@pytest.fixture
def resolv_conf(tmp_path):
    def _write(text):
        path = tmp_path / "resolv.conf"
        path.write_text(text)
        return ResolvConfFallback(str(path))

    return _write


@pytest.fixture
def server():
    return DHCPServer("eth1")


@pytest.fixture
def manager(link):
    return LinkManager([link])
