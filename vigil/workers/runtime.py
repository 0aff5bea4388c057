"""WorkerRuntime — the state machine every monitoring worker runs.

IDLE → CONNECTING → NATIVE | FALLBACK → STOPPING → TERMINATED

NATIVE samples the detection provider on the concern's interval. Any
failure (missing capability at load, exception while sampling) moves the
worker to FALLBACK for the rest of the run, where it keeps reporting a
limited payload so the supervisor still sees it alive. Heartbeats run on
their own timer; they pause only when a native sample has been stuck for
longer than the hang threshold, so the supervisor treats the worker as
stale and replaces it.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Callable

import structlog

from vigil import protocol
from vigil.config import VigilSettings, settings as default_settings
from vigil.protocol import CMD_PING, CMD_STOP, Command
from vigil.provider.handle import ProviderHandle
from vigil.workers.channel import Channel
from vigil.workers.concerns import ConcernContext, WorkerSpec

logger = structlog.get_logger()


class RuntimeState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    NATIVE = "native"
    FALLBACK = "fallback"
    STOPPING = "stopping"
    TERMINATED = "terminated"


_ACTIVE = (RuntimeState.NATIVE, RuntimeState.FALLBACK)


class WorkerRuntime:
    """Runs one concern against a provider and reports over a channel."""

    def __init__(
        self,
        spec: WorkerSpec,
        provider: ProviderHandle,
        channel: Channel,
        settings: VigilSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._spec = spec
        self._provider = provider
        self._channel = channel
        self._settings = settings or default_settings
        self._clock = clock
        self._state = RuntimeState.IDLE
        self._ctx = ConcernContext(key=spec.key, settings=self._settings)
        self._tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self._last_progress = clock()
        self._fallback_reason: str | None = None

    @property
    def key(self) -> str:
        return self._spec.key

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def context(self) -> ConcernContext:
        return self._ctx

    @property
    def fallback_reason(self) -> str | None:
        return self._fallback_reason

    @property
    def detection_hung(self) -> bool:
        """True while a native sample has made no progress past the threshold."""
        if self._state is not RuntimeState.NATIVE:
            return False
        return self._clock() - self._last_progress > self._settings.detection_hang_threshold

    async def start(self) -> None:
        if self._state is not RuntimeState.IDLE:
            return
        self._state = RuntimeState.CONNECTING

        provider = await self._provider.get()
        if provider is None:
            await self._enter_fallback(self._provider.error or "provider unavailable")
        else:
            missing = self._provider.missing(self._spec.capabilities)
            if missing:
                await self._enter_fallback(f"missing capabilities: {', '.join(missing)}")
            else:
                self._ctx.operations = {
                    name: self._provider.operation(name)
                    for name in (*self._spec.capabilities, *self._spec.optional)
                    if self._provider.has(name)
                }
                self._state = RuntimeState.NATIVE
                await self._run_start_hook()

        self._mark_progress()
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._detection_loop()),
        ]
        logger.info("worker_started", worker=self.key, mode=self._state.value)

    async def stop(self) -> None:
        if self._state in (RuntimeState.STOPPING, RuntimeState.TERMINATED):
            return
        self._state = RuntimeState.STOPPING

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        if self._spec.on_stop is not None:
            try:
                payload = await asyncio.to_thread(self._spec.on_stop, self._ctx)
                if payload:
                    self._emit(payload)
            except Exception as e:
                logger.error("worker_stop_hook_failed", worker=self.key, error=str(e))

        self._state = RuntimeState.TERMINATED
        self._stopped.set()
        logger.info("worker_stopped", worker=self.key)

    async def wait(self) -> None:
        """Block until the runtime has terminated."""
        await self._stopped.wait()

    async def handle_command(self, command: Command) -> None:
        name = command.cmd
        if name == CMD_STOP:
            await self.stop()
            return
        if name == CMD_PING:
            self.beat()
            return

        handler = self._spec.commands.get(name)
        if handler is None:
            logger.warning("worker_unknown_command", worker=self.key, cmd=name)
            return
        if self._state not in _ACTIVE:
            logger.warning("worker_command_ignored", worker=self.key, cmd=name, state=self._state.value)
            return
        try:
            payload = await asyncio.to_thread(handler, self._ctx, command.args)
            if payload:
                self._emit(payload)
        except Exception as e:
            logger.error("worker_command_failed", worker=self.key, cmd=name, error=str(e))

    def beat(self) -> bool:
        """Send one heartbeat, unless detection is hung."""
        if self.detection_hung:
            logger.warning(
                "worker_heartbeat_suppressed",
                worker=self.key,
                stalled_s=round(self._clock() - self._last_progress, 1),
            )
            return False
        return self._channel.send(protocol.heartbeat(self.key))

    # ── Internals ─────────────────────────────────────────────────────────

    async def _run_start_hook(self) -> None:
        if self._spec.on_start is None:
            return
        try:
            payload = await asyncio.to_thread(self._spec.on_start, self._ctx)
            if payload:
                self._emit(payload)
        except Exception as e:
            await self._enter_fallback(f"start hook failed: {e}")

    async def _enter_fallback(self, reason: str) -> None:
        if self._state not in (RuntimeState.CONNECTING, RuntimeState.NATIVE):
            return
        self._state = RuntimeState.FALLBACK
        self._fallback_reason = reason
        self._ctx.operations = {}
        logger.warning("worker_fallback", worker=self.key, reason=reason)
        if self._spec.on_fallback is not None:
            try:
                payload = self._spec.on_fallback(self._ctx)
                if payload:
                    self._emit(payload)
            except Exception as e:
                logger.error("worker_fallback_hook_failed", worker=self.key, error=str(e))

    async def _heartbeat_loop(self) -> None:
        while self._state in _ACTIVE:
            self.beat()
            await asyncio.sleep(self._settings.heartbeat_interval)

    async def _detection_loop(self) -> None:
        while self._state in _ACTIVE:
            if self._state is RuntimeState.NATIVE:
                await self._sample_native()
            else:
                self._report_fallback()
            # A failed native sample switches to the fallback cadence immediately
            if self._state is RuntimeState.NATIVE:
                interval = self._spec.interval
            else:
                interval = self._settings.fallback_interval
            await asyncio.sleep(interval)

    async def _sample_native(self) -> None:
        try:
            payload = await asyncio.to_thread(self._spec.sample, self._ctx)
            self._mark_progress()
            if payload:
                self._emit(payload)
        except Exception as e:
            logger.error("worker_detection_failed", worker=self.key, error=str(e))
            await self._enter_fallback(f"detection failed: {e}")

    def _report_fallback(self) -> None:
        try:
            self._emit(self._fallback_payload())
        except Exception as e:
            logger.error("worker_fallback_report_failed", worker=self.key, error=str(e))
        self._mark_progress()

    def _fallback_payload(self) -> dict[str, Any]:
        return {
            **self._spec.fallback_data(self._ctx),
            "module": self.key,
            "ts": time.time(),
            "count": self._ctx.next_count(),
            "source": "fallback",
            "status": "limited",
            "reason": self._fallback_reason,
        }

    def _mark_progress(self) -> None:
        self._last_progress = self._clock()

    def _emit(self, payload: dict[str, Any]) -> None:
        self._channel.send(protocol.event(self.key, payload))
