"""Demultiplexing of the return audio sent by HomeKit.

For two-way audio HomeKit sends RTP and RTCP packets to a single port. FFmpeg
expects them on two different ports, so ``RtpDemuxer`` listens on the port
negotiated with HomeKit and forwards each datagram, unchanged, to the RTP or
the RTCP port FFmpeg reads from.
"""
import asyncio
import logging

from pyhapcam.const import (
    ANY_ADDRESSES,
    IP_FAMILY_V4,
    LOOPBACK_ADDRESSES,
    RTCP_PACKET_TYPE_MAX,
    RTCP_PACKET_TYPE_MIN,
)
from pyhapcam.util import socket_family

logger = logging.getLogger(__name__)

# An RTCP receiver report header with no report blocks.
RTCP_KEEPALIVE = b"\x80\xc9\x00\x01\x00\x00\x00\x00"


def is_rtcp_packet(data):
    """Return True if the datagram is an RTCP packet.

    RTP and RTCP multiplexed on one port are told apart by the second octet:
    RTCP packet types are in the 192-223 range, which RTP payload types with
    the marker bit set never use (RFC 5761).
    """
    if len(data) < 2:
        return False
    return RTCP_PACKET_TYPE_MIN <= data[1] <= RTCP_PACKET_TYPE_MAX


class RtpDemuxerProtocol(asyncio.DatagramProtocol):
    """Hands the datagrams received by the demuxer socket back to it."""

    def __init__(self, demuxer):
        self.demuxer = demuxer

    def datagram_received(self, data, addr):
        self.demuxer.datagram_received(data, addr)

    def error_received(self, exc):
        logger.debug("%s: RTP demuxer socket error: %s", self.demuxer.name, exc)

    def connection_lost(self, exc):
        if exc:
            logger.debug("%s: RTP demuxer socket closed: %s", self.demuxer.name, exc)


class RtpDemuxer:
    """Split the packets arriving on ``port`` between an RTP and an RTCP port.

    The demuxer is running from ``start`` until ``close``. Datagrams with an
    RTCP packet type go to ``rtcp_port``, every other datagram to ``rtp_port``,
    both on the loopback address of ``ip_family``.
    """

    def __init__(
        self,
        name,
        ip_family,
        port,
        rtcp_port,
        rtp_port,
        heartbeat_interval=None,
        loop=None,
    ):
        self.name = name
        self.ip_family = ip_family or IP_FAMILY_V4
        self.port = port
        self.rtcp_target = (LOOPBACK_ADDRESSES[self.ip_family], rtcp_port)
        self.rtp_target = (LOOPBACK_ADDRESSES[self.ip_family], rtp_port)
        self.heartbeat_interval = heartbeat_interval
        self.loop = loop
        self.transport = None
        self.packets_forwarded = 0

        self._first_packet = asyncio.Event()
        self._closed = asyncio.Event()
        self._heartbeat = None
        self._last_rtcp = None

    @classmethod
    async def create(cls, *args, **kwargs):
        """Create a demuxer and bind its socket."""
        demuxer = cls(*args, **kwargs)
        await demuxer.start()
        return demuxer

    @property
    def is_running(self):
        """True from the moment the socket is bound until ``close``."""
        return self.transport is not None and not self._closed.is_set()

    async def start(self):
        """Bind the UDP socket on ``port``."""
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        self.transport, _ = await self.loop.create_datagram_endpoint(
            lambda: RtpDemuxerProtocol(self),
            local_addr=(ANY_ADDRESSES[self.ip_family], self.port),
            family=socket_family(self.ip_family),
        )
        logger.debug(
            "%s: RTP demuxer listening on %s port %d (RTP %d, RTCP %d).",
            self.name,
            self.ip_family,
            self.port,
            self.rtp_target[1],
            self.rtcp_target[1],
        )

    def datagram_received(self, data, addr):  # pylint: disable=unused-argument
        """Forward ``data`` to the RTP or RTCP target."""
        if not self.is_running:
            return

        if is_rtcp_packet(data):
            self._last_rtcp = data
            target = self.rtcp_target
        else:
            target = self.rtp_target

        self.transport.sendto(data, target)
        self.packets_forwarded += 1

        if not self._first_packet.is_set():
            logger.debug("%s: Received the first return audio packet.", self.name)
            self._first_packet.set()

        self._schedule_heartbeat()

    def _schedule_heartbeat(self):
        if self.heartbeat_interval is None:
            return
        if self._heartbeat:
            self._heartbeat.cancel()
        self._heartbeat = self.loop.call_later(
            self.heartbeat_interval, self._send_heartbeat
        )

    def _send_heartbeat(self):
        """Keep FFmpeg from timing out while HomeKit sends nothing."""
        self._heartbeat = None
        if not self.is_running:
            return
        self.transport.sendto(self._last_rtcp or RTCP_KEEPALIVE, self.rtcp_target)
        self._schedule_heartbeat()

    async def wait_first_packet(self, timeout=None):
        """Wait until the first packet is forwarded.

        :param timeout: Seconds to wait, ``None`` to wait as long as the demuxer
            is running.
        :type timeout: float

        :return: True if a packet was forwarded, False if the demuxer was closed
            or the timeout expired first.
        :rtype: bool
        """
        if self._first_packet.is_set():
            return self.is_running
        if not self.is_running:
            return False

        first = asyncio.ensure_future(self._first_packet.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait(
                (first, closed), timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            first.cancel()
            closed.cancel()
        return self._first_packet.is_set() and self.is_running

    def close(self):
        """Unbind the socket. Safe to call more than once."""
        if self._closed.is_set():
            return
        self._closed.set()

        if self._heartbeat:
            self._heartbeat.cancel()
            self._heartbeat = None

        if self.transport is not None:
            self.transport.close()
        logger.debug("%s: RTP demuxer on port %s closed.", self.name, self.port)
