"""The streaming delegate of a camera: negotiates and runs HomeKit live streams.

When a HomeKit client wants to watch a camera it does the following:
1. Prepares a session, telling the camera its address, ports and SRTP keys.
   The camera reserves the local ports it needs and answers with its own.
2. Starts the session with its preferred video and audio configuration. The
   camera starts FFmpeg to stream the camera's RTSP feed to the client.
[3. Reconfigures the session, e.g. to lower the bitrate on a bad connection.]
4. Stops the session, after which every resource of the session is released.

``StreamingDelegate`` handles these requests for one camera. It owns the
registry of sessions, shares the UDP port reservoir with the other cameras of
the process, and keeps the per-camera state that outlives single sessions:
the bitrate to restore once nobody is watching and the FFmpeg probe size.
"""
import asyncio
import functools
import logging

from pyhapcam import util
from pyhapcam.config import Config
from pyhapcam.const import (
    AUDIO_PACKET_SIZE,
    HARDWARE_TRANSCODE_HEIGHT,
    HARDWARE_TRANSCODE_WIDTH,
    HIGH_LATENCY_PACKET_TIME,
    HOMEKIT_IDR_INTERVAL,
    IP_FAMILY_V4,
    IP_FAMILY_V6,
    MAX_DELAY_USEC,
    SESSION_STATE_ACTIVE,
    SESSION_STATE_PENDING,
    SRTP_SUITE_NAMES,
    STREAM_REQUEST_RECONFIGURE,
    STREAM_REQUEST_START,
    STREAM_REQUEST_STOP,
    VIDEO_PACKET_SIZE,
)
from pyhapcam.exceptions import (
    DeviceOffline,
    NoMatchingStreamProfile,
    PortReservationFailed,
    StreamingError,
    TalkbackChannelUnavailable,
    TranscoderSpawnFailed,
)
from pyhapcam.ffmpeg import FfmpegOptions, FfmpegStreamingProcess
from pyhapcam.rtp import RtpDemuxer
from pyhapcam.sdp import build_talkback_sdp
from pyhapcam.talkback import TalkbackRelay

logger = logging.getLogger(__name__)


class SRTPParameters:
    """Transport parameters of one media stream, as sent by the client."""

    def __init__(self, port, crypto_suite, srtp_key, srtp_salt):
        self.port = port
        self.crypto_suite = crypto_suite
        self.srtp_key = srtp_key
        self.srtp_salt = srtp_salt

    @property
    def key_salt(self):
        return self.srtp_key + self.srtp_salt


class PrepareStreamRequest:
    def __init__(self, session_id, target_address, address_version, video, audio):
        self.session_id = session_id
        self.target_address = target_address
        self.address_version = address_version
        self.video = video
        self.audio = audio


class MediaResponse:
    def __init__(self, port, ssrc, srtp_key, srtp_salt):
        self.port = port
        self.ssrc = ssrc
        self.srtp_key = srtp_key
        self.srtp_salt = srtp_salt


class PrepareStreamResponse:
    def __init__(self, video, audio, failed=False):
        self.video = video
        self.audio = audio
        self.failed = failed


class VideoParameters:
    """Video configuration selected by the client.

    ``max_bit_rate`` is in kbps, ``profile`` and ``level`` are the H.264
    values negotiated by HomeKit.
    """

    def __init__(
        self, width, height, fps, max_bit_rate, pt=99, profile=1, level=2, mtu=None,
        rtcp_interval=None
    ):
        self.width = width
        self.height = height
        self.fps = fps
        self.max_bit_rate = max_bit_rate
        self.pt = pt
        self.profile = profile
        self.level = level
        self.mtu = mtu
        self.rtcp_interval = rtcp_interval


class AudioParameters:
    """Audio configuration selected by the client.

    ``sample_rate`` is in kHz, ``max_bit_rate`` in kbps and ``packet_time``
    in milliseconds.
    """

    def __init__(
        self, codec, channel, sample_rate, max_bit_rate, packet_time, pt=110,
        comfort_pt=None, rtcp_interval=None
    ):
        self.codec = codec
        self.channel = channel
        self.sample_rate = sample_rate
        self.max_bit_rate = max_bit_rate
        self.packet_time = packet_time
        self.pt = pt
        self.comfort_pt = comfort_pt
        self.rtcp_interval = rtcp_interval


class StartStreamRequest:
    type = STREAM_REQUEST_START

    def __init__(self, session_id, video, audio):
        self.session_id = session_id
        self.video = video
        self.audio = audio


class ReconfigureStreamRequest:
    type = STREAM_REQUEST_RECONFIGURE

    def __init__(self, session_id, video):
        self.session_id = session_id
        self.video = video


class StopStreamRequest:
    type = STREAM_REQUEST_STOP

    def __init__(self, session_id):
        self.session_id = session_id


class Session:
    """A streaming session, from prepare until stop."""

    def __init__(
        self,
        session_id,
        address,
        address_version,
        video_port,
        video_return_port,
        video_crypto_suite,
        video_srtp,
        video_ssrc,
        has_audio_support,
        audio_port,
        audio_incoming_rtcp_port,
        audio_incoming_port,
        audio_incoming_rtp_port,
        audio_crypto_suite,
        audio_srtp,
        audio_ssrc,
        rtp_port_reservations,
        reservation_failed=False,
        rtp_demuxer=None,
        talkback=None,
    ):
        self.session_id = session_id
        self.address = address
        self.address_version = address_version

        self.video_port = video_port
        self.video_return_port = video_return_port
        self.video_crypto_suite = video_crypto_suite
        self.video_srtp = video_srtp  # Key and salt concatenated.
        self.video_ssrc = video_ssrc

        self.has_audio_support = has_audio_support
        self.audio_port = audio_port
        self.audio_incoming_rtcp_port = audio_incoming_rtcp_port
        self.audio_incoming_port = audio_incoming_port
        self.audio_incoming_rtp_port = audio_incoming_rtp_port
        self.audio_crypto_suite = audio_crypto_suite
        self.audio_srtp = audio_srtp
        self.audio_ssrc = audio_ssrc

        self.rtp_port_reservations = rtp_port_reservations
        self.reservation_failed = reservation_failed
        self.rtp_demuxer = rtp_demuxer
        self.talkback = talkback

        self.state = SESSION_STATE_PENDING
        self.processes = []
        self.talkback_relay = None
        self.talkback_task = None
        self.starting = False
        self.stopped = False

    @property
    def is_two_way(self):
        return self.rtp_demuxer is not None

    def __repr__(self):
        return "<Session {} {} {}>".format(self.session_id, self.state, self.address)


class StreamingDelegate:
    """Handles the streaming requests of one camera."""

    def __init__(
        self,
        camera,
        rtp_ports,
        config=None,
        ffmpeg_options=None,
        recording=None,
        on_session_stopped=None,
    ):
        """
        :param camera: The camera to stream from.
        :type camera: ``pyhapcam.camera.Camera``

        :param rtp_ports: The port reservoir, shared by all cameras.
        :type rtp_ports: ``pyhapcam.ports.RtpPortReservoir``

        :param recording: The HomeKit Secure Video timeshift buffer of the
            camera, if it records.
        :type recording: ``pyhapcam.camera.RecordingBuffer``

        :param on_session_stopped: Called with the session ID after a session
            was torn down, whatever the reason.
        """
        self.camera = camera
        self.name = camera.name
        self.rtp_ports = rtp_ports
        self.config = config or Config()
        self.ffmpeg_options = ffmpeg_options or FfmpegOptions(
            camera.name, camera.hints, self.config
        )
        self.recording = recording
        self.on_session_stopped = on_session_stopped

        self.sessions = {}
        self.active_sessions = 0
        self.starting_sessions = 0
        self.rtsp_entry = None
        self.saved_bitrate = 0

        self.probesize_override = 0
        self.probesize_override_count = 0
        self._probesize_override_timer = None

        self._jobs = set()

    @property
    def hints(self):
        return self.camera.hints

    @property
    def probesize(self):
        """Return the probe size FFmpeg should use for this camera."""
        return self.probesize_override or self.hints.probesize

    @property
    def has_audio_support(self):
        return self.ffmpeg_options.has_audio_support

    def _is_two_way(self, has_audio_support):
        return has_audio_support and self.hints.two_way_audio

    def is_transcoding(self, request):
        """Whether the stream for ``request`` should be transcoded.

        It is if the camera asks for it, or on high latency connections, which
        HomeKit announces with a 60 ms audio packet time.
        """
        return bool(
            self.hints.transcode
            or (
                request.audio.packet_time >= HIGH_LATENCY_PACKET_TIME
                and self.hints.transcode_high_latency
            )
        )

    # ### Requests ###

    async def handle_stream_request(self, request):
        """Dispatch a start, reconfigure or stop request."""
        if request.type == STREAM_REQUEST_START:
            await self.start(request)
        elif request.type == STREAM_REQUEST_RECONFIGURE:
            self.reconfigure(request)
        else:
            await self.stop(request.session_id)

    async def prepare(self, request):
        """Reserve the ports of a new session and return the transport answer.

        A failure to reserve ports does not raise: the answer is still returned,
        marked as failed, and starting the session raises instead.

        :type request: ``PrepareStreamRequest``
        :rtype: ``PrepareStreamResponse``
        """
        session_id = request.session_id
        ip_family = request.address_version or IP_FAMILY_V4

        if session_id in self.sessions:
            logger.warning(
                "%s: [%s] Session prepared again, discarding the previous one.",
                self.name, session_id,
            )
            await self.stop(session_id)

        reservations = []
        reserve_failed = False

        async def reserve_port(port_count=1):
            nonlocal reserve_failed
            # Once a reservation failed, the session cannot start anyway.
            if reserve_failed:
                return -1
            try:
                port = await self.rtp_ports.reserve(ip_family, port_count)
            except PortReservationFailed:
                reserve_failed = True
                return -1
            reservations.extend(range(port, port + port_count))
            return port

        has_audio_support = self.has_audio_support
        two_way = self._is_two_way(has_audio_support)

        audio_incoming_rtcp_port = await reserve_port()
        audio_incoming_port = await reserve_port() if two_way else -1
        audio_incoming_rtp_port = await reserve_port(2) if two_way else -1
        audio_ssrc = util.generate_ssrc()

        if not has_audio_support:
            logger.info(
                "%s: Audio support disabled. A version of FFmpeg that is compiled "
                "with fdk_aac support is required to support audio.",
                self.name,
            )

        video_return_port = await reserve_port()
        video_ssrc = util.generate_ssrc()

        rtp_demuxer = None
        talkback = None
        if two_way and not reserve_failed:
            try:
                rtp_demuxer = await RtpDemuxer.create(
                    self.name,
                    ip_family,
                    audio_incoming_port,
                    audio_incoming_rtcp_port,
                    audio_incoming_rtp_port,
                    heartbeat_interval=self.config.heartbeat_interval,
                )
            except OSError as err:
                logger.error(
                    "%s: Unable to listen for return audio on port %s: %s",
                    self.name, audio_incoming_port, err,
                )
                reserve_failed = True

            try:
                talkback = await self.camera.get_talkback_endpoint()
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: Error requesting the talkback endpoint", self.name)
            if not talkback:
                logger.error("%s: Unable to open the return audio channel.", self.name)

        if reserve_failed:
            logger.error(
                "%s: Unable to reserve the UDP ports needed to begin streaming.",
                self.name,
            )

        session = Session(
            session_id,
            address=request.target_address,
            address_version=ip_family,
            video_port=request.video.port,
            video_return_port=video_return_port,
            video_crypto_suite=request.video.crypto_suite,
            video_srtp=request.video.key_salt,
            video_ssrc=video_ssrc,
            has_audio_support=has_audio_support,
            audio_port=request.audio.port,
            audio_incoming_rtcp_port=audio_incoming_rtcp_port,
            audio_incoming_port=audio_incoming_port,
            audio_incoming_rtp_port=audio_incoming_rtp_port,
            audio_crypto_suite=request.audio.crypto_suite,
            audio_srtp=request.audio.key_salt,
            audio_ssrc=audio_ssrc,
            rtp_port_reservations=reservations,
            reservation_failed=reserve_failed,
            rtp_demuxer=rtp_demuxer,
            talkback=talkback,
        )
        self.sessions[session_id] = session

        # With two-way audio HomeKit sends to the demuxer, which splits RTP and
        # RTCP. Without it, the RTCP port is enough.
        return PrepareStreamResponse(
            video=MediaResponse(
                video_return_port, video_ssrc, request.video.srtp_key, request.video.srtp_salt
            ),
            audio=MediaResponse(
                audio_incoming_port if two_way else audio_incoming_rtcp_port,
                audio_ssrc,
                request.audio.srtp_key,
                request.audio.srtp_salt,
            ),
            failed=reserve_failed,
        )

    async def start(self, request):
        """Start streaming a prepared session.

        :type request: ``StartStreamRequest``

        :raises StreamingError: If the session cannot be started. The session
            keeps its ports until it is stopped.
        """
        session_id = request.session_id
        session = self.sessions.get(session_id)
        if session is None or session.state != SESSION_STATE_PENDING:
            logger.error(
                "%s: [%s] Requested to start a stream that was not prepared.",
                self.name, session_id,
            )
            raise StreamingError(
                "{}: No prepared streaming session {}".format(self.name, session_id)
            )

        if not self.camera.is_online:
            message = "Unable to start video stream: the camera is offline or unavailable."
            logger.error("%s: %s", self.name, message)
            raise DeviceOffline("{}: {}".format(self.name, message))

        if session.reservation_failed:
            message = "Unable to start video stream: UDP ports could not be reserved."
            logger.error("%s: %s", self.name, message)
            raise PortReservationFailed("{}: {}".format(self.name, message))

        video = request.video
        is_transcoding = self.is_transcoding(request)
        hardware = is_transcoding and self.hints.hardware_transcoding

        rtsp_entry = self.camera.find_rtsp(
            HARDWARE_TRANSCODE_WIDTH if hardware else video.width,
            HARDWARE_TRANSCODE_HEIGHT if hardware else video.height,
            None,
            self.ffmpeg_options.host_system_max_pixels if is_transcoding else 0,
        )
        if rtsp_entry is None:
            message = "Unable to start video stream: no valid RTSP stream profile was found."
            logger.error(
                "%s: %s %sx%s, %s fps, %s kbps.",
                self.name, message, video.width, video.height, video.fps, video.max_bit_rate,
            )
            raise NoMatchingStreamProfile("{}: {}".format(self.name, message))
        self.rtsp_entry = rtsp_entry

        # Only the first stream of the camera saves the bitrate to restore.
        if not self.saved_bitrate:
            self.saved_bitrate = max(self.camera.get_bitrate(rtsp_entry.channel.id), 0)

        # The camera adapts the stream once it processes the change.
        self._push_bitrate(video.max_bit_rate * 1000)
        session.starting = True
        self.starting_sessions += 1

        logger.info(
            "%s: Streaming request from %s%s: %sx%s@%sfps, %s kbps. %s %s, %s kbps.",
            self.name,
            session.address,
            " (high latency connection)"
            if request.audio.packet_time >= HIGH_LATENCY_PACKET_TIME else "",
            video.width, video.height, video.fps, video.max_bit_rate,
            ("Hardware accelerated transcoding" if hardware else "Transcoding")
            if is_transcoding else "Using",
            rtsp_entry.name,
            rtsp_entry.channel.bitrate // 1000,
        )

        process = FfmpegStreamingProcess(
            self.name,
            session_id,
            self.build_stream_args(session, request, rtsp_entry, is_transcoding),
            self.config,
            return_port=None if session.is_two_way
            else (session.address_version, session.video_return_port),
            on_exit=functools.partial(self._stream_exited, session),
            on_io_error=self.adjust_probe_size,
            on_timeout=functools.partial(self._schedule_stop, session),
        )
        try:
            await process.start()
        except TranscoderSpawnFailed:
            if self._finish_starting(session) and self._is_idle():
                await self._restore_camera_settings()
            raise
        self._finish_starting(session)

        if session.stopped:
            # Stopped while FFmpeg was starting.
            logger.debug("%s: [%s] Session stopped while starting.", self.name, session_id)
            await process.stop()
            return

        session.processes.append(process)
        session.state = SESSION_STATE_ACTIVE
        self.active_sessions += 1

        if session.is_two_way:
            session.talkback_task = util.add_job(
                self._jobs,
                self._start_return_audio,
                session,
                request,
                description="return audio",
            )

    def reconfigure(self, request):
        """Apply new video parameters to a running stream.

        Only the bitrate of the camera is adjusted.

        :type request: ``ReconfigureStreamRequest``
        """
        video = request.video
        logger.info(
            "%s: Streaming parameters adjustment requested by HomeKit: "
            "%sx%s, %s fps, %s kbps.",
            self.name, video.width, video.height, video.fps, video.max_bit_rate,
        )
        if self.rtsp_entry is None:
            logger.debug("%s: No stream to reconfigure.", self.name)
            return
        self._push_bitrate(video.max_bit_rate * 1000)

    async def stop(self, session_id):
        """Stop a session and release everything it holds.

        Stopping an unknown session does nothing. Each teardown step runs even
        if a previous one failed.
        """
        session = self.sessions.pop(session_id, None)
        if session is None:
            logger.debug("%s: [%s] No session to stop.", self.name, session_id)
            return

        session.stopped = True
        was_active = session.state == SESSION_STATE_ACTIVE
        if was_active:
            self.active_sessions -= 1
        was_starting = self._finish_starting(session)

        task = session.talkback_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        if session.talkback_relay is not None:
            try:
                await session.talkback_relay.close()
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: [%s] Error closing the talkback relay", self.name, session_id)

        for process in session.processes:
            try:
                await process.stop()
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: [%s] Error stopping FFmpeg", self.name, session_id)

        if session.rtp_demuxer is not None:
            try:
                session.rtp_demuxer.close()
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: [%s] Error closing the RTP demuxer", self.name, session_id)

        for port in session.rtp_port_reservations:
            try:
                self.rtp_ports.free(port, session.address_version)
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: [%s] Error freeing port %s", self.name, session_id, port)

        if was_active:
            logger.info("%s: Stopped video streaming session.", self.name)

        # Once nobody watches, hand the camera back to recording, or restore
        # its bitrate.
        if (was_active or was_starting) and self._is_idle():
            await self._restore_camera_settings()

        if self.on_session_stopped is not None:
            try:
                self.on_session_stopped(session_id)
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: [%s] Error in stop callback", self.name, session_id)

    async def shutdown(self):
        """Stop all streaming sessions."""
        for session_id in list(self.sessions):
            await self.stop(session_id)

        if self._probesize_override_timer:
            self._probesize_override_timer.cancel()
            self._probesize_override_timer = None

        jobs = list(self._jobs)
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.wait(jobs)

    # ### Probe size ###

    def adjust_probe_size(self):
        """Increase the probe size after FFmpeg failed to read the livestream.

        The probe size doubles on each failure, up to ``config.probesize_max``.
        The increase is dropped after ``config.probesize_decay`` seconds unless
        failures kept happening often enough to make it permanent.
        """
        if self._probesize_override_timer:
            self._probesize_override_timer.cancel()
            self._probesize_override_timer = None

        self.probesize_override_count += 1
        self.probesize_override = min(self.probesize * 2, self.config.probesize_max)

        permanent = (
            self.probesize_override_count >= self.config.probesize_permanent_threshold
        )
        logger.error(
            "%s: FFmpeg ended unexpectedly due to issues with the media stream provided "
            "by the camera. Adjusting the settings we use for FFmpeg %s to use safer "
            "values at the expense of some additional streaming startup latency.",
            self.name,
            "permanently" if permanent else "temporarily",
        )

        if not permanent:
            self._probesize_override_timer = asyncio.get_running_loop().call_later(
                self.config.probesize_decay, self._reset_probe_size
            )

    def _reset_probe_size(self):
        self._probesize_override_timer = None
        self.probesize_override = 0
        logger.debug("%s: Probe size restored to %s.", self.name, self.probesize)

    # ### FFmpeg arguments ###

    def _srtp_output(self, session, port, crypto_suite, key_salt, ssrc, payload_type,
                     packet_size):
        address = session.address
        if session.address_version == IP_FAMILY_V6:
            address = "[{}]".format(address)

        args = [
            "-payload_type", str(payload_type),
            "-ssrc", str(ssrc),
            "-f", "rtp",
        ]
        suite = SRTP_SUITE_NAMES.get(crypto_suite)
        if suite is None:
            scheme = "rtp"
        else:
            scheme = "srtp"
            args.extend(
                ["-srtp_out_suite", suite, "-srtp_out_params", util.to_base64_str(key_salt)]
            )
        args.append(
            "{}://{}:{}?rtcpport={}&pkt_size={}".format(
                scheme, address, port, port, packet_size
            )
        )
        return args

    def _audio_filter(self):
        fftnr = self.config.audio_filter_fftnr
        if fftnr is None:
            return []
        fftnr = min(max(fftnr, 0.01), 97)
        return ["-af", "afftdn=nt=w:om=o:tn=1:tr=1:nr={}".format(fftnr)]

    def build_stream_args(self, session, request, rtsp_entry, is_transcoding):
        """Return the FFmpeg arguments streaming ``rtsp_entry`` to the client."""
        video = request.video
        audio = request.audio
        fps = rtsp_entry.channel.fps

        args = [
            "-hide_banner",
            "-nostats",
            "-fflags", "+discardcorrupt",
            *self.ffmpeg_options.video_decoder,
            "-probesize", str(self.probesize),
            "-max_delay", str(MAX_DELAY_USEC),
            "-r", str(fps),
            "-rtsp_transport", "tcp",
            "-i", rtsp_entry.url,
            "-map", "0:v:0",
        ]

        if is_transcoding:
            args.extend(
                self.ffmpeg_options.stream_encoder(
                    video.width, video.height, video.fps, video.max_bit_rate,
                    video.profile, video.level, HOMEKIT_IDR_INTERVAL, fps,
                )
            )
        else:
            args.extend(["-vcodec", "copy"])

        args.extend(
            self._srtp_output(
                session, session.video_port, session.video_crypto_suite,
                session.video_srtp, session.video_ssrc, video.pt, VIDEO_PACKET_SIZE,
            )
        )

        if session.has_audio_support:
            args.extend(
                [
                    "-map", "0:a:0?",
                    *self.ffmpeg_options.audio_encoder,
                    "-profile:a", "38",
                    "-flags", "+global_header",
                    "-f", "null",
                    "-ar", "{}k".format(audio.sample_rate),
                    "-b:a", "{}k".format(audio.max_bit_rate),
                    "-bufsize", "{}k".format(2 * audio.max_bit_rate),
                    "-ac", str(audio.channel),
                ]
            )
            args.extend(self._audio_filter())
            args.extend(
                self._srtp_output(
                    session, session.audio_port, session.audio_crypto_suite,
                    session.audio_srtp, session.audio_ssrc, audio.pt, AUDIO_PACKET_SIZE,
                )
            )

        args.extend(self.config.ffmpeg_log_args)
        return args

    def build_return_audio_args(self, request):
        """Return the FFmpeg arguments decoding the audio HomeKit sends back."""
        return [
            "-hide_banner",
            "-nostats",
            "-protocol_whitelist", "crypto,file,pipe,rtp,udp",
            "-f", "sdp",
            "-acodec", self.ffmpeg_options.audio_decoder,
            "-i", "pipe:0",
            "-map", "0:a:0",
            *self.ffmpeg_options.audio_encoder,
            "-flags", "+global_header",
            "-b:a", "{}k".format(request.audio.max_bit_rate),
            "-f", "adts",
            "pipe:1",
            *self.config.ffmpeg_log_args,
        ]

    # ### Two-way audio ###

    async def _start_return_audio(self, session, request):
        """Relay the audio HomeKit sends to the camera once it starts flowing."""
        if not session.talkback:
            logger.error(
                "%s: [%s] Unable to open the return audio channel.",
                self.name, session.session_id,
            )
            return

        process = FfmpegStreamingProcess(
            self.name,
            session.session_id,
            self.build_return_audio_args(request),
            self.config,
            stdin=True,
            stdout=True,
            on_exit=functools.partial(self._return_audio_exited, session),
        )
        relay = TalkbackRelay(self.name, session.talkback, process)
        handed_off = False
        try:
            await relay.connect()

            # FFmpeg gives up if it gets no packet shortly after starting.
            if not await session.rtp_demuxer.wait_first_packet(
                self.config.first_packet_timeout
            ):
                logger.debug(
                    "%s: [%s] No return audio received.", self.name, session.session_id
                )
                return
            if session.stopped:
                return

            await process.start()
            if session.stopped:
                return

            session.processes.append(process)
            session.talkback_relay = relay
            handed_off = True

            sdp = build_talkback_sdp(
                self.name,
                session.address_version,
                session.address,
                session.audio_incoming_rtp_port,
                request.audio.pt,
                request.audio.sample_rate,
                request.audio.channel,
                session.audio_srtp,
            )
            process.stdin.write((sdp + "\n").encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

            relay.start()
        except TalkbackChannelUnavailable as err:
            logger.error("%s: [%s] %s", self.name, session.session_id, err)
        except (TranscoderSpawnFailed, ConnectionError) as err:
            logger.error(
                "%s: [%s] Unable to start the return audio: %s",
                self.name, session.session_id, err,
            )
        finally:
            if not handed_off:
                await process.stop()
                await relay.close()

    def _return_audio_exited(self, session, returncode):
        if not session.stopped:
            logger.debug(
                "%s: [%s] Return audio ended with %s.", self.name, session.session_id, returncode
            )

    # ### Internals ###

    def _stream_exited(self, session, returncode):  # pylint: disable=unused-argument
        """Tear the session down when its video FFmpeg ends on its own."""
        if session.stopped:
            return
        self._schedule_stop(session)

    def _schedule_stop(self, session):
        if session.stopped or self.sessions.get(session.session_id) is not session:
            return
        util.add_job(self._jobs, self.stop, session.session_id, description="stop")

    def _finish_starting(self, session):
        """Return whether ``session`` was between the bitrate push and promotion."""
        if not session.starting:
            return False
        session.starting = False
        self.starting_sessions -= 1
        return True

    def _is_idle(self):
        return self.active_sessions == 0 and self.starting_sessions == 0

    def _push_bitrate(self, bitrate):
        if self.rtsp_entry is None:
            return
        util.add_job(
            self._jobs,
            self.camera.set_bitrate,
            self.rtsp_entry.channel.id,
            bitrate,
            description="set bitrate",
        )

    async def _restore_camera_settings(self):
        try:
            if self.recording is not None and self.recording.is_recording:
                # Restart the timeshift buffer now that we've stopped streaming.
                await self.recording.restart_timeshifting()
            elif self.saved_bitrate:
                if self.rtsp_entry is not None:
                    await self.camera.set_bitrate(self.rtsp_entry.channel.id, self.saved_bitrate)
                self.saved_bitrate = 0
        except Exception:  # pylint: disable=broad-except
            logger.exception("%s: Error restoring the camera settings", self.name)
