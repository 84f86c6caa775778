"""Reservation of the UDP ports used by streaming sessions.

One ``RtpPortReservoir`` is shared by every camera of the process. Sessions
reserve single ports or RTP/RTCP pairs from it when they are prepared and free
them when they stop.
"""
import asyncio
import logging
import socket

from pyhapcam.const import ANY_ADDRESSES, DEFAULT_RTP_PORT_RANGE, IP_FAMILY_V4
from pyhapcam.exceptions import PortReservationFailed
from pyhapcam.util import socket_family

logger = logging.getLogger(__name__)


def is_port_bindable(ip_family, port):
    """Return True if a UDP socket can currently be bound to ``port``."""
    try:
        sock = socket.socket(socket_family(ip_family), socket.SOCK_DGRAM)
    except OSError:
        return False
    try:
        sock.bind((ANY_ADDRESSES[ip_family], port))
    except OSError:
        return False
    finally:
        sock.close()
    return True


class RtpPortReservoir:
    """A pool of UDP port numbers per address family."""

    def __init__(self, port_range=DEFAULT_RTP_PORT_RANGE, probe=True):
        """Create a reservoir for the inclusive ``port_range``.

        :param probe: Whether to check that a candidate port can be bound before
            handing it out, so that ports used by other programs are skipped.
        :type probe: bool
        """
        first, last = port_range
        if first > last or first < 1 or last > 65535:
            raise ValueError("Invalid port range {}-{}".format(first, last))
        self.port_range = (first, last)
        self.probe = probe
        self._reserved = {}
        self._lock = asyncio.Lock()

    def _in_use(self, ip_family):
        return self._reserved.setdefault(ip_family, set())

    def _is_available(self, ip_family, port):
        if port in self._in_use(ip_family):
            return False
        return not self.probe or is_port_bindable(ip_family, port)

    def _find(self, ip_family, port_count):
        first, last = self.port_range
        if port_count == 1:
            for port in range(first, last + 1):
                if self._is_available(ip_family, port):
                    return port
            return None

        # RTP pairs start on an even port.
        for port in range(first + first % 2, last, 2):
            if self._is_available(ip_family, port) and self._is_available(
                ip_family, port + 1
            ):
                return port
        return None

    async def reserve(self, ip_family=IP_FAMILY_V4, port_count=1):
        """Reserve one port, or two contiguous ports.

        :param ip_family: ``ipv4`` or ``ipv6``.
        :type ip_family: str

        :param port_count: 1 for a single port, 2 for an (n, n+1) pair.
        :type port_count: int

        :return: The reserved port, or the first port of the pair.
        :rtype: int

        :raises PortReservationFailed: If no port or pair is available.
        """
        if port_count not in (1, 2):
            raise ValueError("port_count must be 1 or 2, got {}".format(port_count))

        async with self._lock:
            port = self._find(ip_family, port_count)
            if port is None:
                logger.warning(
                    "No %s UDP %s available in range %d-%d.",
                    ip_family,
                    "port" if port_count == 1 else "port pair",
                    *self.port_range
                )
                raise PortReservationFailed(
                    "Unable to reserve {} {} UDP port(s)".format(port_count, ip_family)
                )

            in_use = self._in_use(ip_family)
            in_use.update(range(port, port + port_count))

        logger.debug("Reserved %s port(s) %s (count %d).", ip_family, port, port_count)
        return port

    def free(self, port, ip_family=None):
        """Release a reserved port. Unknown ports are ignored.

        :param ip_family: The family the port was reserved for. When not given,
            the port is released from whichever family holds it.
        :type ip_family: str
        """
        families = [ip_family] if ip_family else list(self._reserved)
        for family in families:
            in_use = self._reserved.get(family)
            if in_use and port in in_use:
                in_use.discard(port)
                logger.debug("Freed %s port %s.", family, port)
                return

    def is_reserved(self, port, ip_family=IP_FAMILY_V4):
        """Return True if ``port`` is currently reserved."""
        return port in self._reserved.get(ip_family, ())

    def free_count(self, ip_family=IP_FAMILY_V4):
        """Return the number of ports not reserved in ``ip_family``."""
        first, last = self.port_range
        return last - first + 1 - len(self._reserved.get(ip_family, ()))
