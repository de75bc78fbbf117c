import logging
import re
import subprocess

import psutil

from deploy.errors import PortExhaustedError

logger = logging.getLogger(__name__)

_PORT_PATTERN = re.compile(r":(\d+)\s")


def psutil_listening_ports() -> set[int]:
    """Ports with a LISTEN socket (TCP) or a bound socket (UDP), per psutil."""
    ports = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"  psutil socket query failed: {e}")
        return ports
    for conn in connections:
        if not conn.laddr:
            continue
        if conn.status == psutil.CONN_LISTEN or conn.status == psutil.CONN_NONE:
            ports.add(conn.laddr.port)
    return ports


def ss_listening_ports() -> set[int]:
    """Ports reported by ``ss -ln`` (falls back to ``netstat -ln``)."""
    for cmd in (["ss", "-lnH"], ["netstat", "-ln"]):
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            return {int(m) for m in _PORT_PATTERN.findall(result.stdout + "\n")}
    logger.debug("  Neither ss nor netstat is available")
    return set()


class PortAllocator:
    """
    Returns the first host port in range that no probe reports as bound.

    Best effort: a port can be claimed between this check and its use. The
    caller's create step fails in that case.
    """

    def __init__(self, start: int = 32768, end: int = 65535, probes=None):
        self.start = start
        self.end = end
        self.probes = probes if probes is not None else [psutil_listening_ports, ss_listening_ports]

    def next_available_port(self, exclude=()) -> int:
        bound = set(exclude)
        for probe in self.probes:
            bound |= probe()

        for port in range(self.start, self.end + 1):
            if port not in bound:
                return port

        raise PortExhaustedError(f"No available ports in range {self.start}-{self.end}")
