"""Tests for the worker runtime state machine."""

from __future__ import annotations

import pytest

from vigil.protocol import Command, Heartbeat, WorkerEvent
from vigil.provider.handle import ProviderHandle
from vigil.workers.concerns import CONCERNS
from vigil.workers.runtime import RuntimeState, WorkerRuntime


class MemoryChannel:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return True

    @property
    def payloads(self):
        return [m.payload for m in self.sent if isinstance(m, WorkerEvent)]

    @property
    def heartbeats(self):
        return [m for m in self.sent if isinstance(m, Heartbeat)]


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _runtime(key, provider, settings, clock=None):
    channel = MemoryChannel()
    kwargs = {"clock": clock} if clock else {}
    runtime = WorkerRuntime(
        CONCERNS[key], ProviderHandle(provider=provider), channel, settings, **kwargs,
    )
    return runtime, channel


class VM:
    def __init__(self, inside=True):
        self.calls = 0
        self.inside = inside

    def detect_virtual_machine(self):
        self.calls += 1
        return {"isInsideVM": self.inside, "detectedVM": "VMware"}


@pytest.mark.asyncio
async def test_native_mode_reports_samples_and_heartbeats(fast_settings, wait_until):
    runtime, channel = _runtime("vm-detect", VM(), fast_settings)
    await runtime.start()
    assert runtime.state is RuntimeState.NATIVE

    await wait_until(lambda: channel.payloads and len(channel.heartbeats) >= 2)
    assert channel.payloads[0]["isInsideVM"] is True
    assert channel.heartbeats[0].worker == "vm-detect"

    await runtime.stop()
    assert runtime.state is RuntimeState.TERMINATED


@pytest.mark.asyncio
async def test_missing_capability_runs_fallback(fast_settings, wait_until):
    runtime, channel = _runtime("vm-detect", object(), fast_settings)
    await runtime.start()
    assert runtime.state is RuntimeState.FALLBACK
    assert "detect_virtual_machine" in runtime.fallback_reason

    await wait_until(lambda: len(channel.payloads) >= 2)
    first, second = channel.payloads[:2]
    assert first["source"] == "fallback"
    assert first["status"] == "limited"
    assert first["module"] == "vm-detect"
    assert first["isInsideVM"] is False
    assert (first["count"], second["count"]) == (0, 1)
    await runtime.stop()


@pytest.mark.asyncio
async def test_no_provider_runs_fallback(fast_settings):
    channel = MemoryChannel()
    runtime = WorkerRuntime(CONCERNS["bt-watch"], ProviderHandle(""), channel, fast_settings)
    await runtime.start()
    assert runtime.state is RuntimeState.FALLBACK
    await runtime.stop()


@pytest.mark.asyncio
async def test_sampling_exception_degrades_for_good(fast_settings, wait_until):
    class Flaky:
        calls = 0

        def detect_virtual_machine(self):
            Flaky.calls += 1
            raise OSError("sysctl failed")

    runtime, channel = _runtime("vm-detect", Flaky(), fast_settings)
    await runtime.start()
    await wait_until(lambda: runtime.state is RuntimeState.FALLBACK)
    await wait_until(lambda: len(channel.payloads) >= 2)

    assert Flaky.calls == 1
    assert all(p["source"] == "fallback" for p in channel.payloads)
    assert "sysctl failed" in channel.payloads[0]["reason"]
    await runtime.stop()


@pytest.mark.asyncio
async def test_malformed_sample_degrades_to_fallback(fast_settings, wait_until):
    class Garbled:
        calls = 0

        def detect_virtual_machine(self):
            Garbled.calls += 1
            return {1: "int key"}

    runtime, channel = _runtime("vm-detect", Garbled(), fast_settings)
    await runtime.start()
    await wait_until(lambda: runtime.state is RuntimeState.FALLBACK)
    await wait_until(lambda: len(channel.payloads) >= 2)

    assert Garbled.calls == 1
    assert all(p["source"] == "fallback" for p in channel.payloads)
    assert runtime.fallback_reason.startswith("detection failed")
    await runtime.stop()


@pytest.mark.asyncio
async def test_failing_command_keeps_worker_serving(fast_settings):
    class Board:
        def get_clipboard_snapshot(self):
            return {("not", "a", "key"): 1}

    runtime, channel = _runtime("clipboard-worker", Board(), fast_settings)
    await runtime.start()
    await runtime.handle_command(Command(cmd="snapshot"))
    assert runtime.state in (RuntimeState.NATIVE, RuntimeState.FALLBACK)

    before = len(channel.heartbeats)
    await runtime.handle_command(Command(cmd="ping"))
    assert len(channel.heartbeats) == before + 1
    await runtime.stop()


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(fast_settings):
    provider = VM()
    runtime, channel = _runtime("vm-detect", provider, fast_settings)
    await runtime.start()
    await runtime.start()
    await runtime.stop()
    await runtime.stop()
    assert runtime.state is RuntimeState.TERMINATED


@pytest.mark.asyncio
async def test_stop_command_runs_stop_hook(fast_settings):
    class Blocker:
        disabled = 0

        def get_notification_blocker_status(self):
            return {"userModified": False}

        def enable_notification_blocking(self):
            return True

        def disable_notification_blocking(self):
            Blocker.disabled += 1
            return True

    runtime, channel = _runtime("notification-blocker", Blocker(), fast_settings)
    await runtime.start()
    assert channel.payloads[0]["eventType"] == "notification-blocking-enabled"

    await runtime.handle_command(Command(cmd="stop"))
    assert runtime.state is RuntimeState.TERMINATED
    assert Blocker.disabled == 1
    assert channel.payloads[-1]["eventType"] == "notification-blocking-disabled"


@pytest.mark.asyncio
async def test_ping_answers_with_heartbeat(fast_settings):
    runtime, channel = _runtime("vm-detect", VM(), fast_settings)
    await runtime.start()
    before = len(channel.heartbeats)
    await runtime.handle_command(Command(cmd="ping"))
    assert len(channel.heartbeats) == before + 1
    await runtime.stop()


@pytest.mark.asyncio
async def test_unknown_command_is_ignored(fast_settings):
    runtime, channel = _runtime("vm-detect", VM(), fast_settings)
    await runtime.start()
    await runtime.handle_command(Command(cmd="selfDestruct"))
    assert runtime.state is RuntimeState.NATIVE
    await runtime.stop()


@pytest.mark.asyncio
async def test_concern_command_payload_is_published(fast_settings):
    class Board:
        def get_clipboard_snapshot(self):
            return {"clipFormats": ["text"], "contentHash": "abc"}

    runtime, channel = _runtime("clipboard-worker", Board(), fast_settings)
    await runtime.start()
    await runtime.handle_command(Command(cmd="snapshot"))
    assert channel.payloads[-1]["eventType"] == "snapshot"
    await runtime.stop()


@pytest.mark.asyncio
async def test_hung_detection_suppresses_heartbeats(fast_settings):
    clock = Clock()
    runtime, channel = _runtime("vm-detect", VM(), fast_settings, clock=clock)
    await runtime.start()

    clock.now += fast_settings.detection_hang_threshold + 1
    assert runtime.detection_hung
    assert runtime.beat() is False

    clock.now = 1000.0
    assert runtime.beat() is True
    await runtime.stop()
