"""Module for `Config` class."""
import logging

from pyhapcam.const import (
    DEFAULT_FFMPEG_PATH,
    DEFAULT_FIRST_PACKET_TIMEOUT,
    DEFAULT_HOST_MAX_PIXELS,
    DEFAULT_PROBESIZE_DECAY,
    DEFAULT_PROBESIZE_MAX,
    DEFAULT_PROBESIZE_PERMANENT_THRESHOLD,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_STREAM_TIMEOUT,
    RTP_HEARTBEAT_INTERVAL,
)

logger = logging.getLogger(__name__)


class Config:
    """Class to store the tunables of the streaming pipeline.

    Values that are not given fall back to the defaults in ``pyhapcam.const``.
    """

    def __init__(
        self,
        *,
        ffmpeg_path=None,
        verbose_ffmpeg=False,
        debug_ffmpeg=False,
        probesize_max=None,
        probesize_permanent_threshold=None,
        probesize_decay=None,
        stop_timeout=None,
        stream_timeout=None,
        first_packet_timeout=DEFAULT_FIRST_PACKET_TIMEOUT,
        heartbeat_interval=RTP_HEARTBEAT_INTERVAL,
        host_max_pixels=None,
        audio_filter_fftnr=None
    ):
        """Initialize a new object.

        Must be called with keyword arguments.

        :param first_packet_timeout: Seconds to wait for HomeKit to send the first
            return audio packet before giving up on two-way audio. ``None`` waits
            for as long as the RTP demuxer is running.
        :type first_packet_timeout: float

        :param heartbeat_interval: Seconds of silence after which the RTP demuxer
            repeats the last RTCP packet. ``None`` disables the heartbeat.
        :type heartbeat_interval: float

        :param audio_filter_fftnr: Noise reduction in dB for the FFmpeg ``afftdn``
            filter. ``None`` disables audio filtering.
        :type audio_filter_fftnr: float
        """
        self._ffmpeg_path = ffmpeg_path
        self.verbose_ffmpeg = verbose_ffmpeg
        self.debug_ffmpeg = debug_ffmpeg
        self._probesize_max = probesize_max
        self._probesize_permanent_threshold = probesize_permanent_threshold
        self._probesize_decay = probesize_decay
        self._stop_timeout = stop_timeout
        self._stream_timeout = stream_timeout
        self.first_packet_timeout = first_packet_timeout
        self.heartbeat_interval = heartbeat_interval
        self._host_max_pixels = host_max_pixels
        self.audio_filter_fftnr = audio_filter_fftnr

    @property
    def ffmpeg_path(self):
        """Return `ffmpeg_path` or the default executable."""
        if self._ffmpeg_path is None:
            self._ffmpeg_path = DEFAULT_FFMPEG_PATH
        return self._ffmpeg_path

    @property
    def probesize_max(self):
        """Return the ceiling for probe size overrides."""
        if self._probesize_max is None:
            self._probesize_max = DEFAULT_PROBESIZE_MAX
        return self._probesize_max

    @property
    def probesize_permanent_threshold(self):
        """Return the failure count after which a probe size override is kept."""
        if self._probesize_permanent_threshold is None:
            self._probesize_permanent_threshold = DEFAULT_PROBESIZE_PERMANENT_THRESHOLD
        return self._probesize_permanent_threshold

    @property
    def probesize_decay(self):
        """Return the seconds after which a temporary override is dropped."""
        if self._probesize_decay is None:
            self._probesize_decay = DEFAULT_PROBESIZE_DECAY
        return self._probesize_decay

    @property
    def stop_timeout(self):
        """Return the seconds to wait for a terminated process before killing it."""
        if self._stop_timeout is None:
            self._stop_timeout = DEFAULT_STOP_TIMEOUT
        return self._stop_timeout

    @property
    def stream_timeout(self):
        """Return the seconds without client RTCP after which a stream is stopped."""
        if self._stream_timeout is None:
            self._stream_timeout = DEFAULT_STREAM_TIMEOUT
        return self._stream_timeout

    @property
    def host_max_pixels(self):
        """Return the largest frame the host can transcode in real time."""
        if self._host_max_pixels is None:
            self._host_max_pixels = DEFAULT_HOST_MAX_PIXELS
        return self._host_max_pixels

    @property
    def ffmpeg_log_args(self):
        """Return the ``-loglevel`` arguments for the configured verbosity."""
        args = []
        if self.verbose_ffmpeg:
            args.extend(["-loglevel", "level+verbose"])
        if self.debug_ffmpeg:
            args.extend(["-loglevel", "level+debug"])
        return args

    def set_values(
        self,
        *,
        ffmpeg_path=None,
        verbose_ffmpeg=None,
        debug_ffmpeg=None,
        probesize_max=None,
        probesize_permanent_threshold=None,
        probesize_decay=None,
        stream_timeout=None,
        audio_filter_fftnr=None
    ):
        """Set class values. Must be called with keyword arguments."""
        if ffmpeg_path:
            self._ffmpeg_path = ffmpeg_path
        if verbose_ffmpeg is not None:
            self.verbose_ffmpeg = verbose_ffmpeg
        if debug_ffmpeg is not None:
            self.debug_ffmpeg = debug_ffmpeg
        if probesize_max:
            self._probesize_max = probesize_max
        if probesize_permanent_threshold:
            self._probesize_permanent_threshold = probesize_permanent_threshold
        if probesize_decay:
            self._probesize_decay = probesize_decay
        if stream_timeout:
            self._stream_timeout = stream_timeout
        if audio_filter_fftnr is not None:
            self.audio_filter_fftnr = audio_filter_fftnr
        logger.debug("Streaming configuration updated")
