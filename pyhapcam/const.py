"""This module contains constants used by other modules."""
MAJOR_VERSION = 1
MINOR_VERSION = 0
PATCH_VERSION = 0
__short_version__ = "{}.{}".format(MAJOR_VERSION, MINOR_VERSION)
__version__ = "{}.{}".format(__short_version__, PATCH_VERSION)
REQUIRED_PYTHON_VER = (3, 10)


# ### Address families ###
IP_FAMILY_V4 = "ipv4"
IP_FAMILY_V6 = "ipv6"

LOOPBACK_ADDRESSES = {
    IP_FAMILY_V4: "127.0.0.1",
    IP_FAMILY_V6: "::1",
}

ANY_ADDRESSES = {
    IP_FAMILY_V4: "0.0.0.0",
    IP_FAMILY_V6: "::",
}


# ### RTP ###
DEFAULT_RTP_PORT_RANGE = (10000, 10999)
RTCP_PACKET_TYPE_MIN = 192
RTCP_PACKET_TYPE_MAX = 223
RTP_HEARTBEAT_INTERVAL = 3.5


# ### SRTP ###
SRTP_SUITE_AES_CM_128_HMAC_SHA1_80 = 0
SRTP_SUITE_AES_CM_256_HMAC_SHA1_80 = 1
SRTP_SUITE_NONE = 2

SRTP_SUITE_NAMES = {
    SRTP_SUITE_AES_CM_128_HMAC_SHA1_80: "AES_CM_128_HMAC_SHA1_80",
    SRTP_SUITE_AES_CM_256_HMAC_SHA1_80: "AES_CM_256_HMAC_SHA1_80",
}


# ### Streaming ###
# MPEG-TS packets are 188 bytes.
VIDEO_PACKET_SIZE = 188 * 3
AUDIO_PACKET_SIZE = 188
HIGH_LATENCY_PACKET_TIME = 60
HARDWARE_TRANSCODE_WIDTH = 3840
HARDWARE_TRANSCODE_HEIGHT = 2160
HOMEKIT_IDR_INTERVAL = 4
MAX_DELAY_USEC = 500000
TALKBACK_AUDIO_PT = 110

AUDIO_SAMPLE_RATE_KHZ_16 = 16

STREAM_REQUEST_START = "start"
STREAM_REQUEST_RECONFIGURE = "reconfigure"
STREAM_REQUEST_STOP = "stop"

SESSION_STATE_PENDING = "pending"
SESSION_STATE_ACTIVE = "active"


# ### Defaults for Config ###
DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_PROBESIZE_MAX = 5000000
DEFAULT_PROBESIZE_PERMANENT_THRESHOLD = 10
DEFAULT_PROBESIZE_DECAY = 10 * 60
DEFAULT_STOP_TIMEOUT = 2.0
DEFAULT_STREAM_TIMEOUT = 5.0
DEFAULT_FIRST_PACKET_TIMEOUT = 30.0
DEFAULT_HOST_MAX_PIXELS = 3840 * 2160
STDERR_TAIL_LINES = 25

# Lines FFmpeg writes when the input livestream could not be read correctly.
FFMPEG_IO_ERROR_PATTERNS = (
    "I/O error",
    "Invalid data found when processing input",
    "Error while decoding stream",
    "could not find codec parameters",
)
