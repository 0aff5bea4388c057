"""Shared test fixtures: fake worker processes, probes and providers. No real OS access."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable

import pytest
import pytest_asyncio

from vigil import protocol
from vigil.config import VigilSettings
from vigil.events.bus import EventBus
from vigil.permissions.definitions import default_permissions
from vigil.permissions.gate import PermissionGate
from vigil.permissions.prober import ProbeResult

_pids = itertools.count(4000)


class FakeStdin:
    """Collects command lines written by the supervisor."""

    def __init__(self, process: FakeProcess) -> None:
        self._process = process
        self.lines: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.lines.append(data)
        message = protocol.decode(data)
        if message.cmd == protocol.CMD_STOP and self._process.exit_on_stop:
            self._process.exit(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> list[str]:
        return [protocol.decode(line).cmd for line in self.lines]


class FakeProcess:
    """Stands in for asyncio.subprocess.Process. Create inside a running loop."""

    def __init__(self, key: str, exit_on_stop: bool = True) -> None:
        self.key = key
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.exit_on_stop = exit_on_stop
        self.killed = False
        self.stdin = FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    def send(self, message: protocol.Heartbeat | protocol.WorkerEvent) -> None:
        self.stdout.feed_data(protocol.encode(message))

    def send_raw(self, line: bytes) -> None:
        self.stdout.feed_data(line)

    def log(self, text: str) -> None:
        self.stderr.feed_data(text.encode() + b"\n")

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdin.closed = True
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Spawner that hands out FakeProcess objects and remembers them."""

    def __init__(self, exit_on_stop: bool = True) -> None:
        self.exit_on_stop = exit_on_stop
        self.processes: list[FakeProcess] = []
        self.fail_next = 0

    async def __call__(self, key: str, settings: VigilSettings) -> FakeProcess:
        if self.fail_next:
            self.fail_next -= 1
            raise OSError("spawn failed")
        process = FakeProcess(key, exit_on_stop=self.exit_on_stop)
        self.processes.append(process)
        return process

    def for_key(self, key: str) -> list[FakeProcess]:
        return [p for p in self.processes if p.key == key]


class FakeProber:
    """Permission prober with scripted answers. Tracks concurrent probes."""

    def __init__(self, granted: dict[str, bool] | None = None, default: bool = True) -> None:
        self.granted = dict(granted or {})
        self.default = default
        self.checked: list[str] = []
        self.requested: list[str] = []
        self.request_result: bool | None = None
        self.grant_on_request = False
        self._active = 0
        self.max_concurrent = 0

    async def check(self, key: str) -> ProbeResult:
        self._active += 1
        self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            await asyncio.sleep(0)
            self.checked.append(key)
            granted = self.granted.get(key, self.default)
            return ProbeResult(granted, None if granted else f"{key} denied")
        finally:
            self._active -= 1

    async def request(self, key: str) -> bool | None:
        self.requested.append(key)
        if self.grant_on_request:
            self.granted[key] = True
        return self.request_result


class FakeProvider:
    """Detection provider with plain attribute-backed answers."""

    def __init__(self, **answers: Any) -> None:
        for name, value in answers.items():
            if callable(value):
                setattr(self, name, value)
            else:
                setattr(self, name, _returning(value))


def _returning(value: Any) -> Callable[..., Any]:
    def op(*args: Any) -> Any:
        return value
    return op


@pytest.fixture
def fast_settings() -> VigilSettings:
    return VigilSettings(
        workers=["process-watch", "vm-detect"],
        heartbeat_interval=0.05,
        fallback_interval=0.05,
        detection_hang_threshold=60,
        stale_threshold=30,
        health_check_interval=60,
        ping_delay=0.01,
        stop_grace_period=0.2,
        restart_base_delay=0.01,
        restart_backoff_cap=5,
        permission_wait_retries=2,
        permission_retry_delay=0,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def gate(prober, bus, fast_settings) -> PermissionGate:
    return PermissionGate(
        prober,
        permissions=default_permissions("darwin"),
        bus=bus,
        settings=fast_settings,
        settings_opener=lambda permission: None,
    )


@pytest_asyncio.fixture
async def open_gate(gate) -> PermissionGate:
    snapshot = await gate.check_all()
    assert snapshot.all_granted
    return gate


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)
    return _wait
