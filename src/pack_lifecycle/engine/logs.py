"""Docker log stream demultiplexing."""

import asyncio
import struct
from typing import AsyncIterator, Union

import aiohttp

# stream type (1 byte), padding (3 bytes), payload size (big endian uint32)
FRAME_HEADER = struct.Struct(">BxxxI")

STREAM_STDOUT = 1
STREAM_STDERR = 2


async def iter_frames(
    reader: Union[aiohttp.StreamReader, asyncio.StreamReader],
) -> AsyncIterator[tuple[int, bytes]]:
    """Yield (stream type, payload) pairs from a multiplexed log stream.

    Ends cleanly when the stream closes, including mid-frame.
    """
    while True:
        try:
            header = await reader.readexactly(FRAME_HEADER.size)
        except asyncio.IncompleteReadError:
            return
        stream_type, size = FRAME_HEADER.unpack(header)
        try:
            payload = await reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            if e.partial:
                yield stream_type, e.partial
            return
        yield stream_type, payload


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Re-split byte chunks into decoded lines."""
    pending = b""
    async for chunk in chunks:
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line.decode("utf-8", errors="replace").rstrip("\r")
    if pending:
        yield pending.decode("utf-8", errors="replace")
