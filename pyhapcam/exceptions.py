"""Errors raised while negotiating and running camera streams.

Every error is scoped to a single streaming session. The session manager
raises them to the caller of ``prepare``/``start`` or logs them when they
happen in the background, it never lets them escape into unrelated code.
"""


class StreamingError(Exception):
    """Base class for streaming session errors."""


class PortReservationFailed(StreamingError):
    """No UDP port (or contiguous port pair) could be reserved."""


class NoMatchingStreamProfile(StreamingError):
    """The camera has no RTSP stream matching the requested parameters."""


class DeviceOffline(StreamingError):
    """The camera is offline or unavailable."""


class TalkbackChannelUnavailable(StreamingError):
    """The return audio channel could not be opened."""


class TranscoderSpawnFailed(StreamingError):
    """The transcoder process could not be started."""


class TranscoderExitedUnexpectedly(StreamingError):
    """The transcoder process exited while the session was still running."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode
