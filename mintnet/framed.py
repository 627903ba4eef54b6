"""Message framing on top of a byte stream.

Each message is serialized and sent prefixed with its length as an
8-byte little-endian unsigned integer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

LENGTH_PREFIX_SIZE = 8


class FrameError(Exception):
    """A frame could not be encoded, decoded or was cut short."""


def _json_dumps(item: Any) -> bytes:
    return json.dumps(item, separators=(",", ":")).encode("utf-8")


def _json_loads(data: bytes) -> Any:
    return json.loads(data.decode("utf-8"))


class FramedCodec:
    """Length-prefixed codec; payloads are JSON unless other functions are given."""

    def __init__(
        self,
        serialize: Callable[[Any], bytes] = _json_dumps,
        deserialize: Callable[[bytes], Any] = _json_loads,
    ) -> None:
        self._serialize = serialize
        self._deserialize = deserialize

    def encode(self, item: Any) -> bytes:
        """Return the frame for `item`: length prefix followed by the payload."""
        try:
            payload = self._serialize(item)
        except (TypeError, ValueError) as exc:
            logger.error("Serializing message failed: %r", item)
            raise FrameError(f"could not serialize message: {exc}") from exc
        return len(payload).to_bytes(LENGTH_PREFIX_SIZE, "little") + payload

    def deserialize_payload(self, payload: bytes) -> Any:
        """Decode a payload without its length prefix."""
        try:
            return self._deserialize(payload)
        except (ValueError, TypeError) as exc:
            raise FrameError(f"could not deserialize message: {exc}") from exc

    def decode(self, buffer: bytearray) -> Any | None:
        """Take one complete frame off the front of `buffer` and return its item.

        Returns None and leaves `buffer` untouched while the frame is incomplete.
        """
        if len(buffer) < LENGTH_PREFIX_SIZE:
            return None
        length = int.from_bytes(buffer[:LENGTH_PREFIX_SIZE], "little")
        end = LENGTH_PREFIX_SIZE + length
        if len(buffer) < end:
            logger.debug("Received partial message (length=%d, buffer=%d)", length, len(buffer))
            return None
        payload = bytes(buffer[LENGTH_PREFIX_SIZE:end])
        del buffer[:end]
        return self.deserialize_payload(payload)


class BidiFramed:
    """Sends and receives framed messages over an asyncio stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        codec: FramedCodec | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._codec = codec or FramedCodec()

    async def send(self, item: Any) -> None:
        """Encode `item` and write it to the stream."""
        self._writer.write(self._codec.encode(item))
        await self._writer.drain()

    async def receive(self) -> Any | None:
        """Wait for the next message; None when the stream ended between frames."""
        try:
            header = await self._reader.readexactly(LENGTH_PREFIX_SIZE)
        except asyncio.IncompleteReadError as exc:
            if not exc.partial:
                return None
            raise FrameError("stream ended inside a length prefix") from exc
        length = int.from_bytes(header, "little")
        try:
            payload = await self._reader.readexactly(length)
        except asyncio.IncompleteReadError as exc:
            raise FrameError("stream ended inside a message") from exc
        logger.debug("Received full message (length=%d)", length)
        return self._codec.deserialize_payload(payload)

    async def close(self) -> None:
        """Close the sending side of the stream."""
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def __aiter__(self) -> BidiFramed:
        return self

    async def __anext__(self) -> Any:
        item = await self.receive()
        if item is None:
            raise StopAsyncIteration
        return item