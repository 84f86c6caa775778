"""The HAP side of camera streaming: TLV values of the stream management service.

When a HAP client (e.g. iOS) wants to start a video stream it does the following:
[0. Read supported RTP, video and audio configuration]
1. Sets the SetupEndpoints characteristic to tell the camera its address, ports
and SRTP keys. The camera answers by setting SetupEndpoints to its own.
2. Sets the SelectedRTPStreamConfiguration characteristic with the audio and
video configuration it wants, which starts the stream.
[3. At some point the client reconfigures or stops the stream the same way.]

``StreamManagement`` decodes those values into requests for a
``pyhapcam.streaming.StreamingDelegate`` and encodes the answers.
"""
import logging
import struct
from uuid import UUID

from pyhapcam import tlv
from pyhapcam.const import (
    IP_FAMILY_V4,
    IP_FAMILY_V6,
    SRTP_SUITE_AES_CM_128_HMAC_SHA1_80,
    SRTP_SUITE_NONE,
)
from pyhapcam.exceptions import StreamingError
from pyhapcam.streaming import (
    AudioParameters,
    PrepareStreamRequest,
    ReconfigureStreamRequest,
    SRTPParameters,
    StartStreamRequest,
    StopStreamRequest,
    VideoParameters,
)
from pyhapcam.util import byte_bool, get_local_address, to_base64_str

logger = logging.getLogger(__name__)


SETUP_TYPES = {
    "SESSION_ID": b"\x01",
    "STATUS": b"\x02",
    "ADDRESS": b"\x03",
    "VIDEO_SRTP_PARAM": b"\x04",
    "AUDIO_SRTP_PARAM": b"\x05",
    "VIDEO_SSRC": b"\x06",
    "AUDIO_SSRC": b"\x07",
}

SETUP_STATUS = {"SUCCESS": b"\x00", "BUSY": b"\x01", "ERROR": b"\x02"}

SETUP_IPV = {"IPV4": b"\x00", "IPV6": b"\x01"}

SETUP_ADDR_INFO = {
    "ADDRESS_VER": b"\x01",
    "ADDRESS": b"\x02",
    "VIDEO_RTP_PORT": b"\x03",
    "AUDIO_RTP_PORT": b"\x04",
}

SETUP_SRTP_PARAM = {"CRYPTO": b"\x01", "MASTER_KEY": b"\x02", "MASTER_SALT": b"\x03"}

STREAMING_STATUS = {"AVAILABLE": b"\x00", "STREAMING": b"\x01", "BUSY": b"\x02"}

RTP_CONFIG_TYPES = {"CRYPTO": b"\x02"}

SELECTED_STREAM_CONFIGURATION_TYPES = {
    "SESSION": b"\x01",
    "VIDEO": b"\x02",
    "AUDIO": b"\x03",
}

SESSION_TYPES = {"SESSION_ID": b"\x01", "COMMAND": b"\x02"}

SESSION_COMMANDS = {"END": 0, "START": 1, "SUSPEND": 2, "RESUME": 3, "RECONFIGURE": 4}

VIDEO_TYPES = {
    "CODEC": b"\x01",
    "CODEC_PARAM": b"\x02",
    "ATTRIBUTES": b"\x03",
    "RTP_PARAM": b"\x04",
}

VIDEO_CODEC_PARAM_TYPES = {
    "PROFILE_ID": b"\x01",
    "LEVEL": b"\x02",
    "PACKETIZATION_MODE": b"\x03",
}

VIDEO_ATTRIBUTES_TYPES = {
    "IMAGE_WIDTH": b"\x01",
    "IMAGE_HEIGHT": b"\x02",
    "FRAME_RATE": b"\x03",
}

RTP_PARAM_TYPES = {
    "PAYLOAD_TYPE": b"\x01",
    "SYNCHRONIZATION_SOURCE": b"\x02",
    "MAX_BIT_RATE": b"\x03",
    "RTCP_SEND_INTERVAL": b"\x04",
    "MAX_MTU": b"\x05",
    "COMFORT_NOISE_PAYLOAD_TYPE": b"\x06",
}

AUDIO_TYPES = {
    "CODEC": b"\x01",
    "CODEC_PARAM": b"\x02",
    "RTP_PARAM": b"\x03",
    "COMFORT_NOISE": b"\x04",
}

AUDIO_CODEC_TYPES = {"PCMU": b"\x00", "PCMA": b"\x01", "AACELD": b"\x02", "OPUS": b"\x03"}

AUDIO_CODEC_PARAM_TYPES = {
    "CHANNEL": b"\x01",
    "BIT_RATE": b"\x02",
    "SAMPLE_RATE": b"\x03",
    "PACKET_TIME": b"\x04",
}

# Index of the sample rate in HAP, 8 kHz being 0.
AUDIO_SAMPLE_RATES = {8: b"\x00", 16: b"\x01", 24: b"\x02"}

NO_SRTP = b"\x01\x01\x02\x02\x00\x03\x00"
"""SRTP parameters announcing an unencrypted stream."""


def get_supported_rtp_config(support_srtp):
    """Return the base64 TLV of the SupportedRTPConfiguration characteristic."""
    crypto = bytes(
        [SRTP_SUITE_AES_CM_128_HMAC_SHA1_80 if support_srtp else SRTP_SUITE_NONE]
    )
    return tlv.encode(RTP_CONFIG_TYPES["CRYPTO"], crypto, to_base64=True)


def get_supported_video_stream_config(resolutions, profiles=(0, 1, 2), levels=(0, 1, 2)):
    """Return the base64 TLV of the SupportedVideoStreamConfiguration characteristic.

    :param resolutions: ``(width, height, fps)`` tuples the camera can stream.
    :type resolutions: ``list``
    """
    codec_params = tlv.encode(VIDEO_CODEC_PARAM_TYPES["PACKETIZATION_MODE"], b"\x00")
    for profile in profiles:
        codec_params += tlv.encode(VIDEO_CODEC_PARAM_TYPES["PROFILE_ID"], bytes([profile]))
    for level in levels:
        codec_params += tlv.encode(VIDEO_CODEC_PARAM_TYPES["LEVEL"], bytes([level]))

    attributes = b"".join(
        tlv.encode(
            VIDEO_TYPES["ATTRIBUTES"],
            tlv.encode(
                VIDEO_ATTRIBUTES_TYPES["IMAGE_WIDTH"], struct.pack("<H", width),
                VIDEO_ATTRIBUTES_TYPES["IMAGE_HEIGHT"], struct.pack("<H", height),
                VIDEO_ATTRIBUTES_TYPES["FRAME_RATE"], struct.pack("<B", fps),
            ),
        )
        for width, height, fps in resolutions
    )
    # H.264 is the only codec HomeKit streams.
    config = tlv.encode(
        VIDEO_TYPES["CODEC"], b"\x00", VIDEO_TYPES["CODEC_PARAM"], codec_params
    )
    return tlv.encode(b"\x01", config + attributes, to_base64=True)


def get_supported_audio_stream_config(sample_rates=(16, 24), comfort_noise=False):
    """Return the base64 TLV of the SupportedAudioStreamConfiguration characteristic.

    Only AAC-ELD is offered, the codec FFmpeg encodes the camera audio to.
    """
    configs = b""
    for sample_rate in sample_rates:
        if sample_rate not in AUDIO_SAMPLE_RATES:
            logger.warning("Unsupported sample rate %s", sample_rate)
            continue
        params = tlv.encode(
            AUDIO_CODEC_PARAM_TYPES["CHANNEL"], b"\x01",
            AUDIO_CODEC_PARAM_TYPES["BIT_RATE"], b"\x00",
            AUDIO_CODEC_PARAM_TYPES["SAMPLE_RATE"], AUDIO_SAMPLE_RATES[sample_rate],
        )
        configs += tlv.encode(
            b"\x01",
            tlv.encode(
                AUDIO_TYPES["CODEC"], AUDIO_CODEC_TYPES["AACELD"],
                AUDIO_TYPES["CODEC_PARAM"], params,
            ),
        )
    return to_base64_str(configs + tlv.encode(b"\x02", byte_bool(comfort_noise)))


def _session_id(raw):
    return str(UUID(bytes=raw))


def _srtp_parameters(value, port):
    objs = tlv.decode(value)
    return SRTPParameters(
        port,
        objs[SETUP_SRTP_PARAM["CRYPTO"]][0],
        objs.get(SETUP_SRTP_PARAM["MASTER_KEY"], b""),
        objs.get(SETUP_SRTP_PARAM["MASTER_SALT"], b""),
    )


def parse_setup_endpoints(value):
    """Decode a SetupEndpoints write.

    :param value: The base64-encoded TLV written by the client.
    :type value: str

    :rtype: ``pyhapcam.streaming.PrepareStreamRequest``
    """
    objs = tlv.decode(value, from_base64=True)

    address_objs = tlv.decode(objs[SETUP_TYPES["ADDRESS"]])
    is_ipv6 = struct.unpack("?", address_objs[SETUP_ADDR_INFO["ADDRESS_VER"]])[0]
    video_port = struct.unpack("<H", address_objs[SETUP_ADDR_INFO["VIDEO_RTP_PORT"]])[0]
    audio_port = struct.unpack("<H", address_objs[SETUP_ADDR_INFO["AUDIO_RTP_PORT"]])[0]

    return PrepareStreamRequest(
        _session_id(objs[SETUP_TYPES["SESSION_ID"]]),
        address_objs[SETUP_ADDR_INFO["ADDRESS"]].decode("utf-8"),
        IP_FAMILY_V6 if is_ipv6 else IP_FAMILY_V4,
        _srtp_parameters(objs[SETUP_TYPES["VIDEO_SRTP_PARAM"]], video_port),
        _srtp_parameters(objs[SETUP_TYPES["AUDIO_SRTP_PARAM"]], audio_port),
    )


def _srtp_response(crypto_suite, media):
    if crypto_suite == SRTP_SUITE_NONE:
        return NO_SRTP
    return tlv.encode(
        SETUP_SRTP_PARAM["CRYPTO"], bytes([crypto_suite]),
        SETUP_SRTP_PARAM["MASTER_KEY"], media.srtp_key,
        SETUP_SRTP_PARAM["MASTER_SALT"], media.srtp_salt,
    )


def build_setup_endpoints_response(request, response, address):
    """Encode the SetupEndpoints value answering ``request``.

    :param address: The address the camera streams from.
    :type address: str

    :return: The base64-encoded TLV.
    :rtype: str
    """
    address_tlv = tlv.encode(
        SETUP_ADDR_INFO["ADDRESS_VER"],
        SETUP_IPV["IPV6"] if request.address_version == IP_FAMILY_V6 else SETUP_IPV["IPV4"],
        SETUP_ADDR_INFO["ADDRESS"], address.encode("utf-8"),
        SETUP_ADDR_INFO["VIDEO_RTP_PORT"], struct.pack("<H", max(response.video.port, 0)),
        SETUP_ADDR_INFO["AUDIO_RTP_PORT"], struct.pack("<H", max(response.audio.port, 0)),
    )
    return tlv.encode(
        SETUP_TYPES["SESSION_ID"], UUID(request.session_id).bytes,
        SETUP_TYPES["STATUS"],
        SETUP_STATUS["ERROR"] if response.failed else SETUP_STATUS["SUCCESS"],
        SETUP_TYPES["ADDRESS"], address_tlv,
        SETUP_TYPES["VIDEO_SRTP_PARAM"], _srtp_response(request.video.crypto_suite, response.video),
        SETUP_TYPES["AUDIO_SRTP_PARAM"], _srtp_response(request.audio.crypto_suite, response.audio),
        SETUP_TYPES["VIDEO_SSRC"], struct.pack("<i", response.video.ssrc),
        SETUP_TYPES["AUDIO_SSRC"], struct.pack("<i", response.audio.ssrc),
        to_base64=True,
    )


def _video_parameters(value):
    objs = tlv.decode(value)
    codec_objs = tlv.decode(objs.get(VIDEO_TYPES["CODEC_PARAM"], b""))
    attr_objs = tlv.decode(objs[VIDEO_TYPES["ATTRIBUTES"]])
    rtp_objs = tlv.decode(objs[VIDEO_TYPES["RTP_PARAM"]])

    mtu = rtp_objs.get(RTP_PARAM_TYPES["MAX_MTU"])
    rtcp_interval = rtp_objs.get(RTP_PARAM_TYPES["RTCP_SEND_INTERVAL"])
    return VideoParameters(
        width=struct.unpack("<H", attr_objs[VIDEO_ATTRIBUTES_TYPES["IMAGE_WIDTH"]])[0],
        height=struct.unpack("<H", attr_objs[VIDEO_ATTRIBUTES_TYPES["IMAGE_HEIGHT"]])[0],
        fps=attr_objs[VIDEO_ATTRIBUTES_TYPES["FRAME_RATE"]][0],
        max_bit_rate=struct.unpack("<H", rtp_objs[RTP_PARAM_TYPES["MAX_BIT_RATE"]])[0],
        pt=rtp_objs[RTP_PARAM_TYPES["PAYLOAD_TYPE"]][0],
        profile=codec_objs.get(VIDEO_CODEC_PARAM_TYPES["PROFILE_ID"], b"\x01")[0],
        level=codec_objs.get(VIDEO_CODEC_PARAM_TYPES["LEVEL"], b"\x02")[0],
        mtu=struct.unpack("<H", mtu)[0] if mtu else None,
        rtcp_interval=struct.unpack("<f", rtcp_interval)[0] if rtcp_interval else None,
    )


def _audio_parameters(value):
    objs = tlv.decode(value)
    codec_objs = tlv.decode(objs[AUDIO_TYPES["CODEC_PARAM"]])
    rtp_objs = tlv.decode(objs[AUDIO_TYPES["RTP_PARAM"]])

    comfort_pt = rtp_objs.get(RTP_PARAM_TYPES["COMFORT_NOISE_PAYLOAD_TYPE"])
    rtcp_interval = rtp_objs.get(RTP_PARAM_TYPES["RTCP_SEND_INTERVAL"])
    return AudioParameters(
        codec=objs[AUDIO_TYPES["CODEC"]][0],
        channel=codec_objs[AUDIO_CODEC_PARAM_TYPES["CHANNEL"]][0],
        sample_rate=8 * (1 + codec_objs[AUDIO_CODEC_PARAM_TYPES["SAMPLE_RATE"]][0]),
        max_bit_rate=struct.unpack("<H", rtp_objs[RTP_PARAM_TYPES["MAX_BIT_RATE"]])[0],
        packet_time=codec_objs[AUDIO_CODEC_PARAM_TYPES["PACKET_TIME"]][0],
        pt=rtp_objs[RTP_PARAM_TYPES["PAYLOAD_TYPE"]][0],
        comfort_pt=comfort_pt[0] if comfort_pt else None,
        rtcp_interval=struct.unpack("<f", rtcp_interval)[0] if rtcp_interval else None,
    )


def parse_selected_stream_configuration(value):
    """Decode a SelectedRTPStreamConfiguration write.

    :return: The start, reconfigure or stop request, ``None`` for commands
        that are not acted on (suspend, resume) or malformed values.
    """
    objs = tlv.decode(value, from_base64=True)
    if SELECTED_STREAM_CONFIGURATION_TYPES["SESSION"] not in objs:
        logger.error("Bad request to set selected stream configuration.")
        return None

    session = tlv.decode(objs[SELECTED_STREAM_CONFIGURATION_TYPES["SESSION"]])
    session_id = _session_id(session[SESSION_TYPES["SESSION_ID"]])
    command = session[SESSION_TYPES["COMMAND"]][0]
    logger.debug("[%s] Set stream config request: %d", session_id, command)

    if command == SESSION_COMMANDS["END"]:
        return StopStreamRequest(session_id)

    video_tlv = objs.get(SELECTED_STREAM_CONFIGURATION_TYPES["VIDEO"])
    if command == SESSION_COMMANDS["RECONFIGURE"] and video_tlv:
        return ReconfigureStreamRequest(session_id, _video_parameters(video_tlv))
    if command == SESSION_COMMANDS["START"]:
        return StartStreamRequest(
            session_id,
            _video_parameters(video_tlv),
            _audio_parameters(objs[SELECTED_STREAM_CONFIGURATION_TYPES["AUDIO"]]),
        )

    logger.debug("[%s] Ignoring stream request type %d", session_id, command)
    return None


class StreamManagement:
    """The CameraRTPStreamManagement services of a camera.

    Each stream slot has its own streaming status; all slots share the
    camera's ``StreamingDelegate``.
    """

    def __init__(self, delegate, address=None, stream_count=1, on_status_changed=None):
        """
        :param delegate: The streaming delegate of the camera. Its
            ``on_session_stopped`` callback is taken over to keep the streaming
            status current.
        :type delegate: ``pyhapcam.streaming.StreamingDelegate``

        :param address: The address the camera streams from. Defaults to the
            address of the interface with the default route.
        :type address: str

        :param on_status_changed: Called with the slot index when its streaming
            status changed, to notify the controllers.
        """
        self.delegate = delegate
        self.address = address or get_local_address()
        self.on_status_changed = on_status_changed
        self.sessions = {}
        self.setup_endpoints = [None] * stream_count
        self._streaming_status = [STREAMING_STATUS["AVAILABLE"]] * stream_count
        delegate.on_session_stopped = self._session_stopped

    def get_streaming_status(self, stream_idx=0):
        """Get the streaming status in TLV format."""
        return tlv.encode(b"\x01", self._streaming_status[stream_idx], to_base64=True)

    def _set_status(self, stream_idx, status):
        if self._streaming_status[stream_idx] == status:
            return
        self._streaming_status[stream_idx] = status
        if self.on_status_changed:
            self.on_status_changed(stream_idx)

    def _session_stopped(self, session_id):
        stream_idx = self.sessions.pop(session_id, None)
        if stream_idx is None:
            return
        if stream_idx not in self.sessions.values():
            self._set_status(stream_idx, STREAMING_STATUS["AVAILABLE"])

    async def async_set_endpoints(self, value, stream_idx=0):
        """Prepare a session from a SetupEndpoints write.

        :return: The value of SetupEndpoints to answer with.
        :rtype: str
        """
        request = parse_setup_endpoints(value)
        logger.debug(
            "[%s] Received endpoint configuration: address %s (%s), video port %s, "
            "audio port %s",
            request.session_id, request.target_address, request.address_version,
            request.video.port, request.audio.port,
        )
        response = await self.delegate.prepare(request)
        self.sessions[request.session_id] = stream_idx

        value = build_setup_endpoints_response(request, response, self.address)
        self.setup_endpoints[stream_idx] = value
        return value

    async def async_set_selected_stream_configuration(self, value):
        """Start, reconfigure or stop a stream from a SelectedRTPStreamConfiguration write."""
        request = parse_selected_stream_configuration(value)
        if request is None:
            return

        stream_idx = self.sessions.get(request.session_id)
        if stream_idx is None:
            logger.error(
                "Requested to %s stream for session %s, but no such session was found",
                request.type, request.session_id,
            )
            return

        try:
            await self.delegate.handle_stream_request(request)
        except StreamingError as err:
            logger.error(
                "[%s] Failed to start/reconfigure stream, deleting session: %s",
                request.session_id, err,
            )
            await self.delegate.stop(request.session_id)
            return

        # A stop may have come in while starting.
        if request.type == StartStreamRequest.type and request.session_id in self.sessions:
            self._set_status(stream_idx, STREAMING_STATUS["STREAMING"])
