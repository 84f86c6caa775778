"""Session description for the two-way audio FFmpeg instance.

FFmpeg reads the return audio HomeKit sends from the RTP demuxer. The SDP
message tells it where to listen, how the audio is encoded and which key
decrypts it.
"""
from pyhapcam.const import AUDIO_SAMPLE_RATE_KHZ_16, IP_FAMILY_V6, TALKBACK_AUDIO_PT
from pyhapcam.util import to_base64_str

# AudioSpecificConfig of AAC-ELD mono for each sample rate.
AAC_ELD_CONFIG = {
    AUDIO_SAMPLE_RATE_KHZ_16: "F8F0212C00BC00",
}
AAC_ELD_CONFIG_DEFAULT = "F8EC212C00BC00"


def build_talkback_sdp(
    name, ip_family, address, rtp_port, payload_type, sample_rate, channels, srtp_key_salt
):
    """Return the SDP describing the return audio stream.

    :param address: Address of the HomeKit client.
    :type address: str

    :param rtp_port: Local port FFmpeg receives the demultiplexed RTP packets on.
    :type rtp_port: int

    :param sample_rate: Sample rate in kHz, 16 or 24.
    :type sample_rate: int

    :param srtp_key_salt: The concatenated SRTP master key and salt.
    :type srtp_key_salt: bytes

    :rtype: str
    """
    ip_version = "IP6" if ip_family == IP_FAMILY_V6 else "IP4"
    clock_rate = "16000" if sample_rate == AUDIO_SAMPLE_RATE_KHZ_16 else "24000"

    return "\n".join(
        [
            "v=0",
            "o=- 0 0 IN {} 127.0.0.1".format(ip_version),
            "s={} Audio Talkback".format(name),
            "c=IN {} {}".format(ip_version, address),
            "t=0 0",
            "m=audio {} RTP/AVP {}".format(rtp_port, payload_type),
            "b=AS:24",
            "a=rtpmap:{} MPEG4-GENERIC/{}/{}".format(TALKBACK_AUDIO_PT, clock_rate, channels),
            "a=fmtp:{} profile-level-id=1;mode=AAC-hbr;sizelength=13;indexlength=3;"
            "indexdeltalength=3; config={}".format(
                TALKBACK_AUDIO_PT, AAC_ELD_CONFIG.get(sample_rate, AAC_ELD_CONFIG_DEFAULT)
            ),
            "a=crypto:1 AES_CM_128_HMAC_SHA1_80 inline:{}".format(
                to_base64_str(srtp_key_salt)
            ),
        ]
    )
