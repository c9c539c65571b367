import subprocess
from unittest import mock

import pytest

from .. import ipaddrs

IP_OUTPUT = """\
1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever
2: enp3s0    inet 203.0.113.7/24 brd 203.0.113.255 scope global enp3s0
3: wlp2s0    inet 192.168.1.23/24 brd 192.168.1.255 scope global wlp2s0
3: wlp2s0    inet 192.168.1.23/24 brd 192.168.1.255 scope global secondary
"""

IFCONFIG_OUTPUT = """\
en0: flags=8863<UP,BROADCAST,SMART,RUNNING,SIMPLEX,MULTICAST> mtu 1500
\tinet6 fe80::1c2b:4f1a:9e3d:77a1%en0 prefixlen 64 secured scopeid 0x4
\tinet 10.1.2.3 netmask 0xffffff00 broadcast 10.1.2.255
lo0: flags=8049<UP,LOOPBACK,RUNNING,MULTICAST> mtu 16384
\tinet 127.0.0.1 netmask 0xff000000
eth1      Link encap:Ethernet  HWaddr d4:3d:7e:01:b4:3e
          inet addr:172.20.0.4  Bcast:172.20.255.255  Mask:255.255.0.0
"""

IPCONFIG_OUTPUT = """\
Ethernet adapter Ethernet:

   Connection-specific DNS Suffix  . : lan
   IPv4 Address. . . . . . . . . . . : 192.168.56.10
   Subnet Mask . . . . . . . . . . . : 255.255.255.0
"""


@pytest.mark.parametrize("addr, private", [
    ("10.0.0.1", True),
    ("172.16.0.1", True),
    ("172.31.255.255", True),
    ("172.32.0.1", False),
    ("192.168.0.6", True),
    ("192.169.0.6", False),
    ("127.0.0.1", False),
    ("8.8.8.8", False),
    ("not.an.ip.addr", False),
    ("10.0.0", False),
])
def test_is_private(addr, private):
    assert ipaddrs.is_private(addr) == private


def test_lan_first():
    assert ipaddrs.lan_first(["127.0.0.1", "8.8.8.8", "10.0.0.2",
                              "192.168.0.9"]) == \
        ["10.0.0.2", "192.168.0.9", "8.8.8.8", "127.0.0.1"]


def test_parse_ip():
    assert ipaddrs.parse_addresses(IP_OUTPUT, ipaddrs._unix_re) == \
        ["127.0.0.1", "203.0.113.7", "192.168.1.23"]


def test_parse_ifconfig():
    assert ipaddrs.parse_addresses(IFCONFIG_OUTPUT, ipaddrs._unix_re) == \
        ["10.1.2.3", "127.0.0.1", "172.20.0.4"]


def test_parse_ipconfig():
    assert ipaddrs.parse_addresses(IPCONFIG_OUTPUT, ipaddrs._win32_re) == \
        ["192.168.56.10"]


def fake_run(outputs):
    def run(args, **kwargs):
        name = args[0]
        if name not in outputs:
            raise FileNotFoundError(name)
        return subprocess.CompletedProcess(args, 0, stdout=outputs[name],
                                           stderr="")
    return run


def find(platform, outputs, found=("ip", "ifconfig", "ipconfig.exe")):
    with mock.patch.object(ipaddrs, "platform", platform), \
         mock.patch.object(ipaddrs, "which",
                           lambda name: [name] if name in found else []), \
         mock.patch.object(subprocess, "run", fake_run(outputs)):
        return ipaddrs.find_addresses()


def test_find_with_ip():
    assert find("linux", {"ip": IP_OUTPUT}) == \
        ["192.168.1.23", "203.0.113.7", "127.0.0.1"]


def test_find_falls_back_to_ifconfig():
    # "ip" is there but doesn't run
    assert find("linux", {"ifconfig": IFCONFIG_OUTPUT}) == \
        ["10.1.2.3", "172.20.0.4", "127.0.0.1"]


def test_find_windows():
    assert find("win32", {"ipconfig.exe": IPCONFIG_OUTPUT}) == \
        ["192.168.56.10"]


def test_find_nothing():
    assert find("linux", {}, found=()) == ["127.0.0.1"]


def test_tool_times_out():
    def run(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])
    with mock.patch.object(ipaddrs, "platform", "linux"), \
         mock.patch.object(ipaddrs, "which", lambda name: [name]), \
         mock.patch.object(subprocess, "run", run):
        assert ipaddrs.find_addresses() == ["127.0.0.1"]


def test_list():
    addresses = ipaddrs.find_addresses()
    assert "127.0.0.1" in addresses
    assert "0.0.0.0" not in addresses
