# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

import ipaddress
import logging
import socket
import struct
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

PROC_ROUTE = '/proc/net/route'
RTF_GATEWAY = 0x2


class GatewayError(Exception):
    """Raised when no default gateway can be determined."""


def parse_proc_route(content: str) -> Optional[str]:
    """Return the default gateway from /proc/net/route content."""
    for line in content.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        destination, gateway, flags = fields[1], fields[2], fields[3]
        try:
            if destination != '00000000' or not int(flags, 16) & RTF_GATEWAY:
                continue
            # Addresses are little-endian hex
            return socket.inet_ntoa(struct.pack('<L', int(gateway, 16)))
        except (ValueError, struct.error):
            continue
    return None


def parse_ip_route(output: str) -> Optional[str]:
    """Return the gateway from `ip route show default` output."""
    for line in output.splitlines():
        fields = line.split()
        if 'via' not in fields:
            continue
        index = fields.index('via') + 1
        if index >= len(fields):
            continue
        try:
            return str(ipaddress.ip_address(fields[index]))
        except ValueError:
            continue
    return None


def default_gateway() -> str:
    """Best-effort lookup of the default IPv4 gateway of this host."""
    try:
        with open(PROC_ROUTE, 'r') as f:
            gateway = parse_proc_route(f.read())
        if gateway:
            return gateway
    except OSError as e:
        logger.debug(f"Could not read {PROC_ROUTE}: {e}")

    try:
        result = subprocess.run(['ip', 'route', 'show', 'default'],
                                capture_output=True, text=True, timeout=10, check=True)
        gateway = parse_ip_route(result.stdout)
        if gateway:
            return gateway
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not run 'ip route': {e}")

    raise GatewayError("No default gateway found")
