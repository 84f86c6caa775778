"""Interfaces of the collaborators a streaming session relies on.

A ``Camera`` wraps the upstream camera library: it knows whether the device is
online, which RTSP streams it offers and how to change their bitrate. A
``RecordingBuffer`` represents the rolling timeshift buffer used for HomeKit
Secure Video recordings.

Integrations subclass these and override the methods below.
"""
import logging

logger = logging.getLogger(__name__)


class CameraHints:
    """Per-camera streaming preferences."""

    def __init__(
        self,
        *,
        probesize=16384,
        transcode=False,
        transcode_high_latency=True,
        hardware_transcoding=False,
        hardware_decoding=False,
        two_way_audio=False
    ):
        self.probesize = probesize
        self.transcode = transcode
        self.transcode_high_latency = transcode_high_latency
        self.hardware_transcoding = hardware_transcoding
        self.hardware_decoding = hardware_decoding
        self.two_way_audio = two_way_audio


class RtspChannel:
    """A video channel of the camera."""

    def __init__(self, channel_id, width, height, fps, bitrate):
        self.id = channel_id
        self.width = width
        self.height = height
        self.fps = fps
        self.bitrate = bitrate

    def __repr__(self):
        return "<RtspChannel id={} {}x{}@{}fps {}bps>".format(
            self.id, self.width, self.height, self.fps, self.bitrate
        )


class RtspEntry:
    """An RTSP stream offered by a camera channel."""

    def __init__(self, name, url, channel):
        self.name = name
        self.url = url
        self.channel = channel

    @property
    def resolution(self):
        """Return ``(width, height, fps)`` of the stream."""
        return (self.channel.width, self.channel.height, self.channel.fps)

    def __repr__(self):
        return "<RtspEntry {} {}>".format(self.name, self.channel)


class Camera:
    """The upstream camera, as seen by the streaming delegate."""

    def __init__(self, name, hints=None, rtsp_entries=None):
        self.name = name
        self.hints = hints or CameraHints()
        self.rtsp_entries = list(rtsp_entries or [])

    @property
    def is_online(self):
        """Whether the camera can be streamed from."""
        return True

    def find_rtsp(self, width, height, min_bitrate=None, max_pixels=0):
        """Return the best RTSP entry for the requested resolution.

        Entries larger than ``max_pixels`` (when non-zero) and slower than
        ``min_bitrate`` (when given) are not considered. An entry with exactly
        the requested resolution wins, otherwise the smallest entry at least as
        large as requested, otherwise the largest entry available.

        :return: The matching entry or ``None``.
        :rtype: ``RtspEntry``
        """
        candidates = [
            entry
            for entry in self.rtsp_entries
            if (not max_pixels or entry.channel.width * entry.channel.height <= max_pixels)
            and (min_bitrate is None or entry.channel.bitrate >= min_bitrate)
        ]
        if not candidates:
            return None

        for entry in candidates:
            if entry.channel.width == width and entry.channel.height == height:
                return entry

        def pixels(entry):
            return entry.channel.width * entry.channel.height

        larger = [
            entry
            for entry in candidates
            if entry.channel.width >= width and entry.channel.height >= height
        ]
        if larger:
            return min(larger, key=pixels)
        return max(candidates, key=pixels)

    def get_bitrate(self, channel_id):  # pylint: disable=unused-argument
        """Return the current bitrate of the channel in bps, negative if unknown."""
        return -1

    async def set_bitrate(self, channel_id, bitrate):
        """Ask the camera to encode the channel at ``bitrate`` bps.

        The camera adapts its stream once it processes the change, callers do
        not wait for it.
        """
        logger.debug(
            "%s: Setting bitrate of channel %s to %s bps.", self.name, channel_id, bitrate
        )

    async def get_talkback_endpoint(self):
        """Return the URL of the return audio channel, ``None`` if unavailable."""
        return None


class RecordingBuffer:
    """A timeshift buffer kept for HomeKit Secure Video recordings."""

    @property
    def is_recording(self):
        """Whether recording is currently enabled."""
        return False

    async def restart_timeshifting(self):
        """Restart the timeshift buffer after live streaming has ended."""
