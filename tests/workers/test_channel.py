"""Tests for the worker-side stdio channel."""

from __future__ import annotations

import io
import os

import pytest

from vigil import protocol
from vigil.workers.channel import StdioChannel


class BrokenPipe(io.RawIOBase):
    def writable(self):
        return True

    def write(self, data):
        raise BrokenPipeError(32, "Broken pipe")


def test_send_writes_one_line():
    out = io.BytesIO()
    channel = StdioChannel(out, io.BytesIO())
    assert channel.send(protocol.heartbeat("vm-detect"))
    assert channel.send(protocol.event("vm-detect", {"isInsideVM": False}))

    lines = out.getvalue().splitlines()
    assert len(lines) == 2
    assert protocol.decode(lines[1]).payload == {"isInsideVM": False}


def test_broken_pipe_is_swallowed():
    channel = StdioChannel(BrokenPipe(), io.BytesIO())
    assert channel.send(protocol.heartbeat("vm-detect")) is False
    assert channel.closed
    assert channel.send(protocol.heartbeat("vm-detect")) is False


@pytest.mark.asyncio
async def test_commands_until_eof():
    read_fd, write_fd = os.pipe()
    with os.fdopen(write_fd, "wb") as writer:
        writer.write(protocol.encode(protocol.command("ping")))
        writer.write(b"garbage\n")
        writer.write(protocol.encode(protocol.heartbeat("vm-detect")))
        writer.write(protocol.encode(protocol.command("setPrivacyMode", mode="REDACTED")))

    with os.fdopen(read_fd, "rb", buffering=0) as reader:
        channel = StdioChannel(io.BytesIO(), reader)
        received = [cmd async for cmd in channel.commands()]

    assert [c.cmd for c in received] == ["ping", "setPrivacyMode"]
    assert received[1].args == {"mode": "REDACTED"}
