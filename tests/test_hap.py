"""Tests for pyhapcam.hap."""
import struct
from unittest.mock import AsyncMock, Mock, patch

import pytest

from pyhapcam import hap, tlv
from pyhapcam.const import STREAM_REQUEST_RECONFIGURE, STREAM_REQUEST_START, STREAM_REQUEST_STOP
from pyhapcam.exceptions import NoMatchingStreamProfile
from pyhapcam.streaming import MediaResponse, PrepareStreamResponse

SESSION_ID = "accc6cc1-0563-4515-8da9-74b450900691"

SET_ENDPOINTS_REQUEST = (
    "ARCszGzBBWNFFY2pdLRQkAaRAxoBAQACDTE5Mi4xNjguMS4xMTQDAjPFBAKs1gQ"
    "lAhDYlmCkyTBZQfxqFS3OnxVOAw4bQZm5NuoQjyanlqWA0QEBAAUlAhAKRPSRVa"
    "qGeNmESTIojxNiAw78WkjTLtGv0waWnLo9gQEBAA=="
)

START_REQUEST = (
    "ARUCAQEBEKzMbMEFY0UVjal0tFCQBpECNAEBAAIJAQEAAgEAAwEAAwsBAoAC"
    "AgJoAQMBHgQXAQFjAgQr66FSAwKEAAQEAAAAPwUCYgUDLAEBAgIMAQEBAgEA"
    "AwEBBAEeAxYBAW4CBMUInmQDAhgABAQAAKBABgENBAEA"
)

STOP_REQUEST = "ARUCAQABEKzMbMEFY0UVjal0tFCQBpE="


def session_tlv(command, video=None):
    session = tlv.encode(
        b"\x01", bytes.fromhex("accc6cc1056345158da974b450900691"),
        b"\x02", bytes([command]),
    )
    args = [b"\x01", session]
    if video:
        args += [b"\x02", video]
    return tlv.encode(*args, to_base64=True)


def prepare_response(failed=False):
    return PrepareStreamResponse(
        MediaResponse(10001, -5, b"k" * 16, b"s" * 14),
        MediaResponse(10000, 1234, b"K" * 16, b"S" * 14),
        failed=failed,
    )


@pytest.fixture
def delegate():
    delegate = Mock()
    delegate.prepare = AsyncMock(return_value=prepare_response())
    delegate.handle_stream_request = AsyncMock()
    delegate.stop = AsyncMock()
    yield delegate


def test_parse_setup_endpoints():
    """Test decoding the endpoints sent by iOS."""
    request = hap.parse_setup_endpoints(SET_ENDPOINTS_REQUEST)

    assert request.session_id == SESSION_ID
    assert request.target_address == "192.168.1.114"
    assert request.address_version == "ipv4"
    assert request.video.port == 50483
    assert request.audio.port == 54956
    assert request.video.crypto_suite == 0
    assert request.video.srtp_key == bytes.fromhex("d89660a4c9305941fc6a152dce9f154e")
    assert request.video.srtp_salt == bytes.fromhex("1b4199b936ea108f26a796a580d1")
    assert len(request.audio.key_salt) == 30


def test_build_setup_endpoints_response():
    """Test encoding the endpoints of the camera."""
    request = hap.parse_setup_endpoints(SET_ENDPOINTS_REQUEST)
    value = hap.build_setup_endpoints_response(request, prepare_response(), "192.168.1.226")

    objs = tlv.decode(value, from_base64=True)
    assert objs[b"\x01"] == bytes.fromhex("accc6cc1056345158da974b450900691")
    assert objs[b"\x02"] == hap.SETUP_STATUS["SUCCESS"]

    address = tlv.decode(objs[b"\x03"])
    assert address[b"\x01"] == b"\x00"
    assert address[b"\x02"] == b"192.168.1.226"
    assert struct.unpack("<H", address[b"\x03"])[0] == 10001
    assert struct.unpack("<H", address[b"\x04"])[0] == 10000

    video_srtp = tlv.decode(objs[b"\x04"])
    assert video_srtp == {b"\x01": b"\x00", b"\x02": b"k" * 16, b"\x03": b"s" * 14}
    assert struct.unpack("<i", objs[b"\x06"])[0] == -5
    assert struct.unpack("<i", objs[b"\x07"])[0] == 1234


def test_build_setup_endpoints_response_failed():
    """Test a failed preparation is answered with an error status."""
    request = hap.parse_setup_endpoints(SET_ENDPOINTS_REQUEST)
    response = prepare_response(failed=True)
    response.video.port = -1

    objs = tlv.decode(
        hap.build_setup_endpoints_response(request, response, "192.168.1.226"),
        from_base64=True,
    )
    assert objs[b"\x02"] == hap.SETUP_STATUS["ERROR"]


def test_build_setup_endpoints_response_no_srtp():
    """Test unencrypted sessions are answered without keys."""
    request = hap.parse_setup_endpoints(SET_ENDPOINTS_REQUEST)
    request.video.crypto_suite = 2
    objs = tlv.decode(
        hap.build_setup_endpoints_response(request, prepare_response(), "192.168.1.226"),
        from_base64=True,
    )
    assert objs[b"\x04"] == hap.NO_SRTP


def test_parse_start_request():
    """Test decoding the stream configuration selected by iOS."""
    request = hap.parse_selected_stream_configuration(START_REQUEST)

    assert request.type == STREAM_REQUEST_START
    assert request.session_id == SESSION_ID

    video = request.video
    assert (video.width, video.height, video.fps) == (640, 360, 30)
    assert video.max_bit_rate == 132
    assert video.pt == 99
    assert video.profile == 0
    assert video.level == 0
    assert video.mtu == 1378
    assert video.rtcp_interval == 0.5

    audio = request.audio
    assert audio.codec == 2
    assert audio.channel == 1
    assert audio.sample_rate == 16
    assert audio.max_bit_rate == 24
    assert audio.packet_time == 30
    assert audio.pt == 110
    assert audio.comfort_pt == 13
    assert audio.rtcp_interval == 5.0


def test_parse_stop_request():
    """Test decoding a stop request."""
    request = hap.parse_selected_stream_configuration(STOP_REQUEST)
    assert request.type == STREAM_REQUEST_STOP
    assert request.session_id == SESSION_ID


def test_parse_reconfigure_request():
    """Test decoding a reconfigure request."""
    objs = tlv.decode(START_REQUEST, from_base64=True)
    request = hap.parse_selected_stream_configuration(session_tlv(4, objs[b"\x02"]))

    assert request.type == STREAM_REQUEST_RECONFIGURE
    assert request.video.max_bit_rate == 132


def test_parse_ignored_requests():
    """Test suspend, resume and malformed requests are ignored."""
    assert hap.parse_selected_stream_configuration(session_tlv(2)) is None
    assert hap.parse_selected_stream_configuration(session_tlv(3)) is None
    assert hap.parse_selected_stream_configuration("AgEA") is None


def test_supported_configurations():
    """Test the supported configuration values."""
    assert hap.get_supported_rtp_config(True) == "AgEA"
    assert hap.get_supported_rtp_config(False) == "AgEC"

    video = tlv.decode(hap.get_supported_video_stream_config([(1920, 1080, 30)]), True)
    config = tlv.decode(video[b"\x01"])
    assert config[b"\x01"] == b"\x00"
    attributes = tlv.decode(config[b"\x03"])
    assert struct.unpack("<H", attributes[b"\x01"])[0] == 1920
    assert attributes[b"\x03"] == b"\x1e"

    audio = tlv.decode(hap.get_supported_audio_stream_config(sample_rates=(16,)), True)
    codec = tlv.decode(audio[b"\x01"])
    assert codec[b"\x01"] == hap.AUDIO_CODEC_TYPES["AACELD"]
    assert tlv.decode(codec[b"\x02"])[b"\x03"] == b"\x01"
    assert audio[b"\x02"] == b"\x00"


@pytest.mark.asyncio
async def test_stream_management(delegate):
    """Test a session from endpoints setup until stop."""
    on_status_changed = Mock()
    management = hap.StreamManagement(
        delegate, "192.168.1.226", stream_count=2, on_status_changed=on_status_changed
    )
    assert management.get_streaming_status(1) == "AQEA"

    value = await management.async_set_endpoints(SET_ENDPOINTS_REQUEST, stream_idx=1)
    assert delegate.prepare.await_args.args[0].session_id == SESSION_ID
    assert management.setup_endpoints[1] == value
    assert tlv.decode(value, True)[b"\x02"] == hap.SETUP_STATUS["SUCCESS"]

    await management.async_set_selected_stream_configuration(START_REQUEST)
    assert delegate.handle_stream_request.await_args.args[0].type == STREAM_REQUEST_START
    assert management.get_streaming_status(1) == "AQEB"
    assert management.get_streaming_status(0) == "AQEA"
    on_status_changed.assert_called_once_with(1)

    await management.async_set_selected_stream_configuration(STOP_REQUEST)
    assert delegate.handle_stream_request.await_args.args[0].type == STREAM_REQUEST_STOP
    # The delegate reports the stop.
    delegate.on_session_stopped(SESSION_ID)
    assert management.get_streaming_status(1) == "AQEA"
    assert management.sessions == {}


@pytest.mark.asyncio
async def test_stream_management_start_failure(delegate):
    """Test a session that cannot start is stopped."""
    delegate.handle_stream_request.side_effect = NoMatchingStreamProfile("Camera: none")
    management = hap.StreamManagement(delegate, "192.168.1.226")
    await management.async_set_endpoints(SET_ENDPOINTS_REQUEST)

    await management.async_set_selected_stream_configuration(START_REQUEST)

    delegate.stop.assert_awaited_once_with(SESSION_ID)
    assert management.get_streaming_status() == "AQEA"


@pytest.mark.asyncio
async def test_stream_management_unknown_session(delegate):
    """Test requests for unknown sessions are ignored."""
    management = hap.StreamManagement(delegate, "192.168.1.226")
    await management.async_set_selected_stream_configuration(START_REQUEST)
    delegate.handle_stream_request.assert_not_awaited()


def test_stream_management_default_address(delegate):
    """Test the local address is used when none is given."""
    with patch("pyhapcam.hap.get_local_address", return_value="10.0.0.2"):
        management = hap.StreamManagement(delegate)
    assert management.address == "10.0.0.2"
    assert delegate.on_session_stopped == management._session_stopped
