"""Stdio channel — the worker side of the message protocol.

Protocol lines go to the process's real stdout; commands arrive on stdin.
The supervisor closing stdin is the worker's signal that nobody is
listening any more.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, BinaryIO, Protocol

from vigil import protocol
from vigil.exceptions import ProtocolError
from vigil.protocol import Command, Heartbeat, WorkerEvent

_logger = logging.getLogger(__name__)


class Channel(Protocol):
    def send(self, message: Heartbeat | WorkerEvent) -> bool: ...


class StdioChannel:
    """Newline-delimited JSON over a pair of binary streams."""

    def __init__(self, out: BinaryIO, inp: BinaryIO) -> None:
        self._out = out
        self._in = inp
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: Heartbeat | WorkerEvent) -> bool:
        """Write one message. Returns False once the reader has gone away."""
        if self._closed:
            return False
        try:
            data = protocol.encode(message)
        except Exception as e:
            _logger.error("Dropping unserialisable %s message: %s", message.kind, e)
            return False
        try:
            self._out.write(data)
            self._out.flush()
        except (BrokenPipeError, ConnectionResetError, ValueError):
            self._closed = True
            return False
        except OSError as e:
            _logger.debug("Channel write failed: %s", e)
            self._closed = True
            return False
        return True

    async def commands(self) -> AsyncIterator[Command]:
        """Yield commands until stdin reaches EOF. Malformed lines are dropped."""
        async for line in self._lines():
            try:
                message = protocol.decode(line)
            except ProtocolError as e:
                _logger.warning("Ignoring malformed command line: %s", e)
                continue
            if not isinstance(message, Command):
                _logger.warning("Ignoring non-command message on stdin: %s", message.kind)
                continue
            yield message

    async def _lines(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), self._in,
            )
        except (NotImplementedError, ValueError, OSError) as e:
            # Not a pipe (or no pipe support in this loop): read from a thread
            _logger.debug("stdin is not pollable (%s), reading in a thread", e)
            async for line in self._threaded_lines(loop):
                yield line
            return
        try:
            while True:
                line = await reader.readline()
                if not line:
                    return
                if line.strip():
                    yield line
        finally:
            transport.close()

    async def _threaded_lines(self, loop: asyncio.AbstractEventLoop) -> AsyncIterator[bytes]:
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def pump() -> None:
            try:
                for line in iter(self._in.readline, b""):
                    loop.call_soon_threadsafe(queue.put_nowait, line)
                loop.call_soon_threadsafe(queue.put_nowait, None)
            except (RuntimeError, ValueError, OSError):
                # Loop closed or stream closed underneath us
                return

        threading.Thread(target=pump, name="vigil-stdin", daemon=True).start()
        while True:
            line = await queue.get()
            if line is None:
                return
            if line.strip():
                yield line
