"""FFmpeg process supervision and the codec options handed to FFmpeg.

``FfmpegStreamingProcess`` starts one FFmpeg instance for a streaming session,
exposes its standard streams and reports back when it fails or exits.
``FfmpegOptions`` knows which decoders and encoders can be used on this host
for a given camera.
"""
import asyncio
import collections
import logging

from pyhapcam.const import (
    ANY_ADDRESSES,
    FFMPEG_IO_ERROR_PATTERNS,
    IP_FAMILY_V4,
    STDERR_TAIL_LINES,
)
from pyhapcam.exceptions import TranscoderExitedUnexpectedly, TranscoderSpawnFailed
from pyhapcam.util import socket_family

logger = logging.getLogger(__name__)

H264_PROFILES = {0: "baseline", 1: "main", 2: "high"}
H264_LEVELS = {0: "3.1", 1: "3.2", 2: "4.0"}

# AAC-ELD, as required by HomeKit for streaming audio.
DEFAULT_AUDIO_ENCODER = (
    "-acodec", "libfdk_aac",
    "-afterburner", "1",
    "-eld_sbr", "1",
    "-eld_v2", "1",
)
DEFAULT_AUDIO_DECODER = "libfdk_aac"


class FfmpegOptions:
    """The FFmpeg codec arguments available for one camera."""

    def __init__(
        self,
        name,
        hints,
        config,
        audio_encoder=DEFAULT_AUDIO_ENCODER,
        audio_decoder=DEFAULT_AUDIO_DECODER,
        hardware_encoder=None,
    ):
        """
        :param hints: The camera hints, see ``pyhapcam.camera.CameraHints``.

        :param audio_encoder: Arguments selecting an AAC-ELD encoder. Empty when
            FFmpeg was built without one, which disables audio.
        :type audio_encoder: ``tuple``

        :param hardware_encoder: Name of the hardware H.264 encoder to use when
            the camera is hinted for hardware transcoding, e.g. ``h264_v4l2m2m``.
        :type hardware_encoder: str
        """
        self.name = name
        self.hints = hints
        self.config = config
        self.audio_encoder = list(audio_encoder or ())
        self.audio_decoder = audio_decoder
        self.hardware_encoder = hardware_encoder

    @property
    def video_decoder(self):
        """Return the arguments selecting the video decoder."""
        if self.hints.hardware_decoding:
            return ["-hwaccel", "auto"]
        return []

    @property
    def host_system_max_pixels(self):
        """Return the largest frame this host can transcode in real time."""
        return self.config.host_max_pixels

    @property
    def has_audio_support(self):
        """Whether FFmpeg can encode the audio format HomeKit expects."""
        return len(self.audio_encoder) > 0

    def stream_encoder(
        self, width, height, fps, bitrate, profile, level, idr_interval, input_fps
    ):
        """Return the arguments to transcode video for a HomeKit stream.

        :param bitrate: Target bitrate in kbps.
        :type bitrate: int

        :param profile: H.264 profile as negotiated by HomeKit (0, 1 or 2).
        :param level: H.264 level as negotiated by HomeKit (0, 1 or 2).

        :param idr_interval: Seconds between keyframes.
        :type idr_interval: int

        :param input_fps: Frame rate of the stream we transcode from.
        :type input_fps: int
        """
        use_hardware = self.hints.hardware_transcoding and self.hardware_encoder

        filters = ["scale=-2:min(ih\\,{})".format(height)]
        if input_fps > fps:
            filters.append("fps=fps={}".format(fps))

        args = [
            "-vcodec", self.hardware_encoder if use_hardware else "libx264",
            "-pix_fmt", "yuv420p",
            "-profile:v", H264_PROFILES.get(profile, "high"),
            "-level:v", H264_LEVELS.get(level, "4.0"),
        ]
        if not use_hardware:
            args.extend(["-preset", "veryfast", "-tune", "zerolatency"])

        args.extend(
            [
                "-noautoscale",
                "-bf", "0",
                "-filter:v", ",".join(filters),
                "-g:v", str(fps * idr_interval),
                "-b:v", "{}k".format(bitrate),
                "-bufsize", "{}k".format(2 * bitrate),
                "-maxrate", "{}k".format(bitrate),
            ]
        )
        logger.debug(
            "%s: Transcoding to %sx%s@%sfps, %s kbps (%s).",
            self.name, width, height, fps, bitrate,
            "hardware" if use_hardware else "software",
        )
        return args


class _ReturnPortProtocol(asyncio.DatagramProtocol):
    """Feeds the RTCP packets HomeKit sends back to the stream watchdog."""

    def __init__(self, process):
        self.process = process

    def datagram_received(self, data, addr):
        self.process.heartbeat()


class FfmpegStreamingProcess:
    """An FFmpeg process started for a streaming session.

    Output is not interpreted, except for the lines of stderr that indicate
    problems reading the input stream.
    """

    def __init__(
        self,
        name,
        session_id,
        args,
        config,
        return_port=None,
        stdin=False,
        stdout=False,
        on_exit=None,
        on_io_error=None,
        on_timeout=None,
    ):
        """
        :param args: The argument vector, without the executable.
        :type args: ``list``

        :param return_port: ``(ip_family, port)`` on which HomeKit sends RTCP for
            this stream. When given, the stream is considered dead once nothing
            arrived there for ``config.stream_timeout`` seconds.
        :type return_port: ``tuple``

        :param stdin: Whether to open a pipe to the process standard input.
        :param stdout: Whether to open a pipe from the process standard output.

        :param on_exit: Called with the process return code when it exits.
        :param on_io_error: Called if FFmpeg exits with an error after reporting a
            problem with its input.
        :param on_timeout: Called once if the return port watchdog fires.
        """
        self.name = name
        self.session_id = session_id
        self.args = list(args)
        self.config = config
        self.return_port = return_port
        self.on_exit = on_exit
        self.on_io_error = on_io_error
        self.on_timeout = on_timeout

        self._pipe_stdin = stdin
        self._pipe_stdout = stdout
        self.process = None
        self.stopping = False
        self.stderr_tail = collections.deque(maxlen=STDERR_TAIL_LINES)

        self._monitor = None
        self._io_error_seen = False
        self._watchdog_transport = None
        self._watchdog_timer = None

    @property
    def command(self):
        return [self.config.ffmpeg_path] + self.args

    @property
    def pid(self):
        return self.process.pid if self.process else None

    @property
    def returncode(self):
        return self.process.returncode if self.process else None

    @property
    def stdin(self):
        return self.process.stdin if self.process else None

    @property
    def stdout(self):
        return self.process.stdout if self.process else None

    @property
    def is_running(self):
        return self.process is not None and self.process.returncode is None

    async def start(self):
        """Start FFmpeg.

        :raises TranscoderSpawnFailed: If the process could not be started.
        """
        logger.debug(
            "%s: [%s] Executing: %s", self.name, self.session_id, " ".join(self.command)
        )
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE if self._pipe_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if self._pipe_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as err:
            logger.error(
                "%s: [%s] Failed to start FFmpeg: %s", self.name, self.session_id, err
            )
            raise TranscoderSpawnFailed(
                "{}: Unable to start FFmpeg: {}".format(self.name, err)
            ) from err

        logger.debug(
            "%s: [%s] Started FFmpeg - PID %d", self.name, self.session_id, self.process.pid
        )
        self._monitor = asyncio.ensure_future(self._monitor_process())

        if self.return_port:
            await self._start_watchdog()

    async def _start_watchdog(self):
        ip_family, port = self.return_port
        loop = asyncio.get_running_loop()
        try:
            self._watchdog_transport, _ = await loop.create_datagram_endpoint(
                lambda: _ReturnPortProtocol(self),
                local_addr=(ANY_ADDRESSES[ip_family or IP_FAMILY_V4], port),
                family=socket_family(ip_family),
            )
        except OSError as err:
            logger.warning(
                "%s: [%s] Unable to watch return port %s: %s",
                self.name, self.session_id, port, err,
            )
            return
        self.heartbeat()

    def heartbeat(self):
        """Restart the watchdog timer, called on each packet from HomeKit."""
        if self._watchdog_transport is None or self.stopping:
            return
        if self._watchdog_timer:
            self._watchdog_timer.cancel()
        self._watchdog_timer = asyncio.get_running_loop().call_later(
            self.config.stream_timeout, self._watchdog_expired
        )

    def _watchdog_expired(self):
        self._watchdog_timer = None
        if self.stopping:
            return
        logger.error(
            "%s: [%s] No response from the HomeKit client for %s seconds, "
            "ending the stream.",
            self.name, self.session_id, self.config.stream_timeout,
        )
        self._close_watchdog()
        if self.on_timeout:
            self.on_timeout()

    def _close_watchdog(self):
        if self._watchdog_timer:
            self._watchdog_timer.cancel()
            self._watchdog_timer = None
        if self._watchdog_transport is not None:
            self._watchdog_transport.close()
            self._watchdog_transport = None

    async def _monitor_process(self):
        """Read stderr until FFmpeg exits and report the exit."""
        async for raw in self.process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self.stderr_tail.append(line)
            if self.config.verbose_ffmpeg or self.config.debug_ffmpeg:
                logger.debug("%s: [%s] ffmpeg: %s", self.name, self.session_id, line)
            if not self._io_error_seen and any(
                pattern in line for pattern in FFMPEG_IO_ERROR_PATTERNS
            ):
                self._io_error_seen = True

        returncode = await self.process.wait()
        self._close_watchdog()

        if not self.stopping:
            if returncode:
                err = TranscoderExitedUnexpectedly(
                    "{}: FFmpeg exited unexpectedly with {} {}".format(
                        self.name,
                        "signal" if returncode < 0 else "code",
                        abs(returncode),
                    ),
                    returncode,
                )
                logger.error(
                    "%s: [%s] %s. Last output:\n%s",
                    self.name, self.session_id, err, "\n".join(self.stderr_tail),
                )
                # Only a read failure that ended FFmpeg calls for a larger probe size.
                if self._io_error_seen:
                    self._notify(self.on_io_error)
            else:
                logger.debug("%s: [%s] FFmpeg ended.", self.name, self.session_id)

        self._notify(self.on_exit, returncode)

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # pylint: disable=broad-except
            logger.exception(
                "%s: [%s] Error in FFmpeg callback %s", self.name, self.session_id, callback
            )

    async def stop(self):
        """Terminate FFmpeg, killing it if it does not exit in time.

        Safe to call more than once.
        """
        if self.stopping:
            return
        self.stopping = True
        self._close_watchdog()

        if self.process is None:
            return

        if self.process.stdin and not self.process.stdin.is_closing():
            self.process.stdin.close()

        if self.process.returncode is None:
            logger.debug("%s: [%s] Stopping FFmpeg.", self.name, self.session_id)
            try:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout=self.config.stop_timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.error(
                    "%s: [%s] Timeout while waiting for FFmpeg to terminate. "
                    "Trying with kill.",
                    self.name, self.session_id,
                )
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.process.wait()

        if self._monitor is not None:
            _, pending = await asyncio.wait({self._monitor}, timeout=self.config.stop_timeout)
            for task in pending:
                task.cancel()
        logger.debug("%s: [%s] FFmpeg stopped.", self.name, self.session_id)
