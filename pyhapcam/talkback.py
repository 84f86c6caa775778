"""Relay of the two-way audio coming from HomeKit to the camera.

The return audio FFmpeg instance decodes what HomeKit sends and writes an
ADTS stream on its standard output. ``TalkbackRelay`` forwards that stream to
the camera's talkback WebSocket.
"""
import asyncio
import logging

import aiohttp

from pyhapcam.exceptions import TalkbackChannelUnavailable

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
CONNECT_TIMEOUT = 10


class TalkbackRelay:
    """Forward the standard output of an FFmpeg process to a WebSocket."""

    def __init__(self, name, url, process, session=None):
        """
        :param url: The talkback WebSocket URL of the camera.
        :type url: str

        :param process: The return audio process, started with ``stdout=True``.
        :type process: ``pyhapcam.ffmpeg.FfmpegStreamingProcess``

        :param session: An ``aiohttp.ClientSession`` to use. When not given, the
            relay creates one and closes it with the relay.
        """
        self.name = name
        self.url = url
        self.process = process
        self.bytes_sent = 0

        self._session = session
        self._owns_session = session is None
        self._ws = None
        self._task = None
        self._closed = False

    @property
    def is_live(self):
        return self._ws is not None and not self._ws.closed and not self._closed

    async def connect(self):
        """Open the talkback WebSocket.

        :raises TalkbackChannelUnavailable: If the connection cannot be opened.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            # Camera controllers use self-signed certificates.
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, ssl=False), CONNECT_TIMEOUT
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as err:
            await self.close()
            if not isinstance(err, asyncio.TimeoutError):
                logger.error(
                    "%s: Error in communicating with the return audio channel: %s",
                    self.name, err,
                )
            raise TalkbackChannelUnavailable(
                "{}: Unable to connect to the return audio channel".format(self.name)
            ) from err
        logger.debug("%s: Connected to the return audio channel.", self.name)

    def start(self):
        """Start relaying in the background."""
        self._task = asyncio.ensure_future(self._relay())
        return self._task

    async def _relay(self):
        stdout = self.process.stdout
        try:
            while not self._closed:
                data = await stdout.read(READ_CHUNK_SIZE)
                if not data:
                    # FFmpeg exited.
                    break
                try:
                    await self._ws.send_bytes(data)
                except (aiohttp.ClientError, ConnectionError, RuntimeError) as err:
                    logger.debug(
                        "%s: Unable to send return audio, closing the channel: %s",
                        self.name, err,
                    )
                    break
                self.bytes_sent += len(data)
        finally:
            await self._close_connection()

    async def _close_connection(self):
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except Exception:  # pylint: disable=broad-except
                logger.exception("%s: Error closing the return audio channel", self.name)
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            await session.close()

    async def close(self):
        """Stop relaying and close the connection. Safe to call more than once."""
        self._closed = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_connection()
