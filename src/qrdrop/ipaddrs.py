# Find our IPv4 addresses by asking the system's own tools, then put the
# ones a neighbour on the LAN can reach first.

import re
import subprocess
from sys import platform

from twisted.python import log
from twisted.python.procutils import which

_unix_re = re.compile(r"\binet (?:addr:)?(?P<address>\d+\.\d+\.\d+\.\d+)")
_win32_re = re.compile(r"IPv4 Address[ .]*: (?P<address>\d+\.\d+\.\d+\.\d+)")

_unix_tools = (("ip", ("-4", "-o", "addr", "show"), _unix_re),
               ("ifconfig", ("-a",), _unix_re),
               )
_win32_tools = (("ipconfig.exe", (), _win32_re),)

TOOL_TIMEOUT = 5


def is_private(addr):
    """RFC1918 addresses: the ones another device on the LAN can reach."""
    parts = addr.split(".")
    if len(parts) != 4:
        return False
    try:
        a, b = int(parts[0]), int(parts[1])
    except ValueError:
        return False
    return a == 10 or (a == 172 and 16 <= b <= 31) or (a == 192 and b == 168)


def lan_first(addresses):
    """Private addresses first, then the rest, loopback last. Stable."""
    def rank(addr):
        if is_private(addr):
            return 0
        if addr.startswith("127."):
            return 2
        return 1
    return sorted(addresses, key=rank)


def parse_addresses(output, regex):
    addresses = []
    for m in regex.finditer(output):
        addr = m.group("address")
        if addr not in addresses:
            addresses.append(addr)
    return addresses


def _query(exe, args, regex):
    try:
        p = subprocess.run([exe] + list(args), capture_output=True,
                           text=True, env={"LANG": "C"},
                           timeout=TOOL_TIMEOUT)
    except (OSError, subprocess.SubprocessError) as e:
        log.msg("unable to run %s: %s" % (exe, e))
        return []
    return parse_addresses(p.stdout, regex)


def find_addresses():
    """Blocking: run it in a thread."""
    tools = _win32_tools if platform == "win32" else _unix_tools
    for name, args, regex in tools:
        for exe in which(name):
            addresses = _query(exe, args, regex)
            if addresses:
                return lan_first(addresses)
    return ["127.0.0.1"]
