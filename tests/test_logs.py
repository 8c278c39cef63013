"""Tests for Docker log stream demultiplexing."""

import asyncio

import pytest

from pack_lifecycle.engine.logs import (
    FRAME_HEADER,
    STREAM_STDERR,
    STREAM_STDOUT,
    iter_frames,
    iter_lines,
)


def frame(stream_type: int, payload: bytes) -> bytes:
    return FRAME_HEADER.pack(stream_type, len(payload)) + payload


def reader_for(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.mark.asyncio
async def test_iter_frames():
    data = frame(STREAM_STDOUT, b"out\n") + frame(STREAM_STDERR, b"err\n") + frame(1, b"")

    frames = [item async for item in iter_frames(reader_for(data))]

    assert frames == [(STREAM_STDOUT, b"out\n"), (STREAM_STDERR, b"err\n"), (STREAM_STDOUT, b"")]


@pytest.mark.asyncio
async def test_iter_frames_truncated_payload():
    data = frame(STREAM_STDOUT, b"complete") + FRAME_HEADER.pack(STREAM_STDOUT, 10) + b"part"

    frames = [item async for item in iter_frames(reader_for(data))]

    assert frames == [(STREAM_STDOUT, b"complete"), (STREAM_STDOUT, b"part")]


@pytest.mark.asyncio
async def test_iter_frames_truncated_header():
    frames = [item async for item in iter_frames(reader_for(b"\x01\x00"))]

    assert frames == []


@pytest.mark.asyncio
async def test_iter_lines_rejoins_split_lines():
    lines = [line async for line in iter_lines(chunks(b"hel", b"lo\nwor", b"ld\r\n", b"tail"))]

    assert lines == ["hello", "world", "tail"]


@pytest.mark.asyncio
async def test_iter_lines_replaces_bad_bytes():
    lines = [line async for line in iter_lines(chunks(b"caf\xe9\n"))]

    assert lines == ["caf\ufffd"]
