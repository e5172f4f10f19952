"""Unit tests for address filtering and parsing helpers."""
import ipaddress
import logging

import pytest

from uplinkdhcp import (accept_address, filter_addresses, parse_scoped_address,
                        parse_server_list)


@pytest.mark.parametrize(
    "address",
    ["0.0.0.0", "127.0.0.1", "127.0.0.53", "127.255.255.254"],
)
def test_accept_address_rejects_null_and_loopback(address):
    assert not accept_address(ipaddress.IPv4Address(address))


@pytest.mark.parametrize("address", ["::1", "2001:db8::1", "::"])
def test_accept_address_rejects_ipv6(address):
    assert not accept_address(ipaddress.IPv6Address(address))


@pytest.mark.parametrize("address", ["8.8.8.8", "10.0.0.1", "192.168.1.254"])
def test_accept_address_accepts_regular_ipv4(address):
    assert accept_address(ipaddress.IPv4Address(address))


def test_accept_address_rejects_non_address_values():
    assert not accept_address("8.8.8.8")
    assert not accept_address(None)


def test_filter_addresses_parses_strings_and_keeps_order():
    result = filter_addresses(
        ["9.9.9.9", "bogus", "0.0.0.0", "::1", ipaddress.IPv4Address("1.1.1.1")]
    )
    assert result == [ipaddress.IPv4Address("9.9.9.9"),
                      ipaddress.IPv4Address("1.1.1.1")]


def test_filter_addresses_keeps_duplicates():
    result = filter_addresses(["8.8.8.8", "8.8.8.8"])
    assert len(result) == 2


@pytest.mark.parametrize(
    "word, expected",
    [
        ("1.1.1.1", "1.1.1.1"),
        ("1.1.1.1%eth0", "1.1.1.1"),
        ("1.1.1.1#cloudflare-dns.com", "1.1.1.1"),
        ("9.9.9.9%2#dns.quad9.net", "9.9.9.9"),
        ("fe80::1%eth0", "fe80::1"),
        ("[2001:db8::53]", "2001:db8::53"),
    ],
)
def test_parse_scoped_address(word, expected):
    assert parse_scoped_address(word) == ipaddress.ip_address(expected)


@pytest.mark.parametrize("word", ["", "%eth0", "300.1.1.1", "nameserver"])
def test_parse_scoped_address_malformed(word):
    with pytest.raises(ValueError):
        parse_scoped_address(word)


def test_parse_server_list_skips_bad_tokens(caplog):
    with caplog.at_level(logging.WARNING):
        servers = parse_server_list("10.0.0.1 nope 0.0.0.0 ::1", "NTP")
    # explicit lists are not filtered, only parsed
    assert servers == [ipaddress.IPv4Address("10.0.0.1"),
                       ipaddress.IPv4Address("0.0.0.0")]
    assert 'NTP= address "nope"' in caplog.text
    assert 'NTP= address "::1"' in caplog.text
