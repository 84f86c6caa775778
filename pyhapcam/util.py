import asyncio
import base64
import functools
import logging
import random
import socket

from .const import IP_FAMILY_V6

logger = logging.getLogger(__name__)

rand = random.SystemRandom()


def iscoro(func):
    """Check if the function is a coroutine or if the function is a ``functools.partial``,
    check the wrapped function for the same.
    """
    if isinstance(func, functools.partial):
        func = func.func
    return asyncio.iscoroutinefunction(func)


def get_local_address():
    """
    Grabs the local IP address using a socket.

    :return: Local IP Address in IPv4 format.
    :rtype: str
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        addr = s.getsockname()[0]
    finally:
        s.close()
    return addr


def socket_family(ip_family):
    """Return the ``socket`` address family for ``ipv4`` or ``ipv6``."""
    return socket.AF_INET6 if ip_family == IP_FAMILY_V6 else socket.AF_INET


def generate_ssrc():
    """Generate a random RTP synchronisation source.

    The value is a signed 32 bit integer, as negotiated by HomeKit clients.
    """
    return rand.randint(-(2 ** 31), 2 ** 31 - 1)


def to_base64_str(bytes_input) -> str:
    return base64.b64encode(bytes_input).decode("utf-8")


def base64_to_bytes(str_input) -> bytes:
    return base64.b64decode(str_input.encode("utf-8"))


def byte_bool(boolv):
    return b"\x01" if boolv else b"\x00"


def add_job(jobs, target, *args, description=None):
    """Schedule ``target`` on the running loop without waiting for it.

    Coroutine functions become tasks, plain functions run in the default
    executor.

    The task is kept in ``jobs`` until it is done so that it is not garbage
    collected, and any exception it raises is logged.

    :param jobs: The set holding the tasks in flight.
    :type jobs: set

    :return: The scheduled task.
    :rtype: asyncio.Task
    """
    if iscoro(target):
        task = asyncio.ensure_future(target(*args))
    else:
        task = asyncio.get_running_loop().run_in_executor(None, target, *args)
    jobs.add(task)

    def _done(fut):
        jobs.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error(
                "Background job %s failed: %s", description or target, exc
            )

    task.add_done_callback(_done)
    return task
