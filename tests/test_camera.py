"""Tests for pyhapcam.camera."""
import pytest

from pyhapcam.camera import Camera, CameraHints, RecordingBuffer, RtspChannel, RtspEntry

from .conftest import RTSP_ENTRIES


@pytest.fixture
def camera():
    yield Camera("Camera", rtsp_entries=RTSP_ENTRIES)


def test_defaults():
    """Test the default camera hints and collaborators."""
    camera = Camera("Camera")
    assert camera.hints.probesize == 16384
    assert camera.hints.transcode_high_latency is True
    assert camera.hints.two_way_audio is False
    assert camera.is_online is True
    assert camera.get_bitrate(0) == -1
    assert camera.find_rtsp(1920, 1080) is None
    assert RecordingBuffer().is_recording is False


def test_find_rtsp_exact(camera):
    """Test an entry with the requested resolution wins."""
    assert camera.find_rtsp(1280, 720).name == "Medium"


def test_find_rtsp_smallest_larger(camera):
    """Test the smallest entry at least as large is picked."""
    assert camera.find_rtsp(800, 600).name == "Medium"
    assert camera.find_rtsp(320, 240).name == "Low"


def test_find_rtsp_largest(camera):
    """Test the largest entry is picked when none is large enough."""
    assert camera.find_rtsp(3840, 2160).name == "High"


def test_find_rtsp_max_pixels(camera):
    """Test entries over max_pixels are not considered."""
    assert camera.find_rtsp(1920, 1080, max_pixels=1280 * 720).name == "Medium"
    assert camera.find_rtsp(1920, 1080, max_pixels=100) is None


def test_find_rtsp_min_bitrate(camera):
    """Test entries slower than min_bitrate are not considered."""
    assert camera.find_rtsp(640, 360, min_bitrate=1000000).name == "Medium"


def test_rtsp_entry():
    """Test RtspEntry exposes its channel."""
    entry = RtspEntry("Low", "rtsp://camera/low", RtspChannel(2, 640, 360, 15, 500000))
    assert entry.resolution == (640, 360, 15)
    assert entry.channel.id == 2
    assert "Low" in repr(entry)


@pytest.mark.asyncio
async def test_default_collaborators():
    """Test the base camera coroutines."""
    camera = Camera("Camera", hints=CameraHints(two_way_audio=True))
    await camera.set_bitrate(0, 1000000)
    assert await camera.get_talkback_endpoint() is None
    await RecordingBuffer().restart_timeshifting()
