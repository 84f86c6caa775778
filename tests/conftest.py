"""Test fixtures and mocks."""
from unittest.mock import AsyncMock, Mock, patch

import pytest

from pyhapcam.camera import Camera, CameraHints, RecordingBuffer, RtspChannel, RtspEntry
from pyhapcam.config import Config
from pyhapcam.ports import RtpPortReservoir


RTSP_ENTRIES = [
    RtspEntry("High", "rtsp://127.0.0.1:7447/high", RtspChannel(0, 1920, 1080, 30, 3000000)),
    RtspEntry("Medium", "rtsp://127.0.0.1:7447/medium", RtspChannel(1, 1280, 720, 30, 1500000)),
    RtspEntry("Low", "rtsp://127.0.0.1:7447/low", RtspChannel(2, 640, 360, 15, 500000)),
]


class MockCamera(Camera):
    """A camera with a bitrate and talkback endpoint set by the test."""

    def __init__(self, name="Camera", hints=None, rtsp_entries=None, bitrate=3000000):
        super().__init__(
            name, hints, RTSP_ENTRIES if rtsp_entries is None else rtsp_entries
        )
        self.online = True
        self.bitrate = bitrate
        self.talkback = None
        self.set_bitrate = AsyncMock()

    @property
    def is_online(self):
        return self.online

    def get_bitrate(self, channel_id):
        return self.bitrate

    async def get_talkback_endpoint(self):
        return self.talkback


class MockRecording(RecordingBuffer):
    def __init__(self, recording=False):
        self.recording = recording
        self.restart_timeshifting = AsyncMock()

    @property
    def is_recording(self):
        return self.recording


class MockProcess:
    """Stands in for ``FfmpegStreamingProcess``."""

    def __init__(self, name, session_id, args, config, **kwargs):
        self.name = name
        self.session_id = session_id
        self.args = args
        self.config = config
        self.return_port = kwargs.get("return_port")
        self.pipe_stdin = kwargs.get("stdin", False)
        self.pipe_stdout = kwargs.get("stdout", False)
        self.on_exit = kwargs.get("on_exit")
        self.on_io_error = kwargs.get("on_io_error")
        self.on_timeout = kwargs.get("on_timeout")
        self.stdin = Mock()
        self.stdin.drain = AsyncMock()
        self.started = False
        self.stop_count = 0

    async def start(self):
        self.started = True

    async def stop(self):
        self.stop_count += 1


@pytest.fixture
def camera():
    yield MockCamera()


@pytest.fixture
def two_way_camera():
    cam = MockCamera(hints=CameraHints(two_way_audio=True))
    cam.talkback = "wss://127.0.0.1:7442/talkback"
    yield cam


@pytest.fixture
def rtp_ports():
    yield RtpPortReservoir(port_range=(10000, 10099), probe=False)


@pytest.fixture
def config():
    yield Config(ffmpeg_path="/usr/bin/ffmpeg", probesize_decay=0.05)


@pytest.fixture
def processes():
    """Patch the FFmpeg process of the delegate and collect the instances."""
    created = []

    def factory(*args, **kwargs):
        process = MockProcess(*args, **kwargs)
        created.append(process)
        return process

    with patch("pyhapcam.streaming.FfmpegStreamingProcess", side_effect=factory):
        yield created


@pytest.fixture
def demuxer():
    """Patch the RTP demuxer of the delegate."""
    mock_demuxer = Mock()
    mock_demuxer.wait_first_packet = AsyncMock(return_value=True)
    with patch("pyhapcam.streaming.RtpDemuxer") as mock_demuxer_cls:
        mock_demuxer_cls.create = AsyncMock(return_value=mock_demuxer)
        yield mock_demuxer_cls


@pytest.fixture
def talkback_relay():
    """Patch the talkback relay of the delegate."""
    with patch("pyhapcam.streaming.TalkbackRelay") as mock_relay_cls:
        relay = mock_relay_cls.return_value
        relay.connect = AsyncMock()
        relay.close = AsyncMock()
        relay.start = Mock()
        yield mock_relay_cls
