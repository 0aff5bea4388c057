"""Spawning worker processes."""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Any, Awaitable, Callable, Protocol

from vigil.config import VigilSettings

# Worker events can carry whole process lists; allow long lines
STREAM_LIMIT = 4 * 1024 * 1024


class WorkerProcess(Protocol):
    """The subset of asyncio.subprocess.Process the supervisor relies on."""

    pid: int
    returncode: int | None
    stdin: Any
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    async def wait(self) -> int: ...
    def kill(self) -> None: ...


Spawner = Callable[[str, VigilSettings], Awaitable[WorkerProcess]]


async def spawn_worker_process(key: str, settings: VigilSettings) -> WorkerProcess:
    """Start ``python -m vigil.workers.runner <key>`` with piped stdio."""
    return await asyncio.create_subprocess_exec(
        sys.executable, "-m", "vigil.workers.runner", key,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, **settings.worker_env()},
        limit=STREAM_LIMIT,
    )
