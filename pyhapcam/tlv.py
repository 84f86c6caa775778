"""Encodes and decodes Tag-Length-Value (tlv8) data."""
import struct

from pyhapcam import util

MAX_CHUNK = 255


def _chunks(tag, data):
    """Yield ``data`` split in TLV items of at most 255 bytes each."""
    if not data:
        yield tag + b"\x00"
        return
    for offset in range(0, len(data), MAX_CHUNK):
        chunk = data[offset : offset + MAX_CHUNK]
        yield tag + struct.pack("B", len(chunk)) + chunk


def encode(*args, to_base64=False):
    """Encode the given byte args in TLV format.

    Values longer than 255 bytes are fragmented in consecutive items with the
    same tag.

    :param args: Even-number, variable length positional arguments repeating a tag
        followed by a value.
    :type args: ``bytes``

    :return: The args in TLV format
    :rtype: ``bytes`` if ``to_base64`` is False and ``str`` otherwise.
    """
    if len(args) % 2 != 0:
        raise ValueError("Even number of args expected (%d given)" % len(args))

    result = b"".join(
        piece
        for tag, data in zip(args[::2], args[1::2])
        for piece in _chunks(tag, data)
    )
    return util.to_base64_str(result) if to_base64 else result


def decode(data, from_base64=False):
    """Decode the given TLV-encoded ``data`` to a ``dict``.

    Consecutive fragments of one tag are joined back together.

    :param from_base64: Whether the given ``data`` should be base64 decoded first.
    :type from_base64: ``bool``

    :return: A ``dict`` containing the tags as keys and the values as values.
    :rtype: ``dict``
    """
    if from_base64:
        data = util.base64_to_bytes(data)

    objects = {}
    current = 0
    while current + 1 < len(data):
        # data[x] is an int, slicing keeps the tag as bytes.
        tag = data[current : current + 1]
        length = data[current + 1]
        value = data[current + 2 : current + 2 + length]
        objects[tag] = objects.get(tag, b"") + value
        current += 2 + length

    return objects
