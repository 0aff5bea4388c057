"""Supervisor — keeps the monitoring workers alive.

One OS process per worker key. The supervisor starts them once the
permission gate is open, reads their protocol lines, republishes their
events on the bus, restarts crashed workers with linear backoff and
replaces workers that stop sending heartbeats.

Think of it as a tiny init system for a fixed set of services.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine

import structlog
from pydantic import BaseModel, Field

from vigil import protocol
from vigil.config import VigilSettings, settings as default_settings
from vigil.events.bus import EventBus
from vigil.exceptions import PermissionGateError, ProtocolError
from vigil.permissions.gate import PermissionGate
from vigil.protocol import CMD_PING, CMD_STOP, Command, Heartbeat, WorkerEvent
from vigil.supervisor.policy import RestartPolicy
from vigil.supervisor.spawn import Spawner, WorkerProcess, spawn_worker_process
from vigil.workers.concerns import get_concern

logger = structlog.get_logger()


class WorkerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STALE = "stale"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class WorkerRecord:
    """A live worker process."""

    key: str
    process: WorkerProcess
    pid: int | None
    started_at: float
    restart_count: int = 0
    last_heartbeat_at: float = 0.0
    state: WorkerState = WorkerState.STARTING
    stop_reason: str | None = None
    exit_code: int | None = None
    restart_on_exit: bool = True
    tasks: list[asyncio.Task] = field(default_factory=list)
    exit_task: asyncio.Task | None = None


class StartReport(BaseModel):
    ok: bool
    started: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    error: str | None = None


class Supervisor:
    """Owns the worker process table."""

    def __init__(
        self,
        gate: PermissionGate,
        bus: EventBus | None = None,
        settings: VigilSettings | None = None,
        spawner: Spawner = spawn_worker_process,
        policy: RestartPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gate = gate
        self._bus = bus
        self._settings = settings or default_settings
        self._spawner = spawner
        self._policy = policy or RestartPolicy.from_settings(self._settings)
        self._clock = clock
        self._records: dict[str, WorkerRecord] = {}
        self._exiting: dict[str, WorkerRecord] = {}  # stopped, not yet reaped
        self._states: dict[str, WorkerState] = {}
        self._restart_counts: dict[str, int] = {}
        self._restart_tasks: dict[str, asyncio.Task] = {}
        self._starting: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._health_task: asyncio.Task | None = None
        self._closing = False

    @property
    def policy(self) -> RestartPolicy:
        return self._policy

    def record(self, key: str) -> WorkerRecord | None:
        return self._records.get(key)

    def live_keys(self) -> list[str]:
        return list(self._records)

    def restart_count(self, key: str) -> int:
        return self._restart_counts.get(key, 0)

    # ── Startup ───────────────────────────────────────────────────────────

    async def start_all(self) -> StartReport:
        """Wait for permissions, then start every configured worker once."""
        self._closing = False
        try:
            snapshot = await self._gate.wait_for_ready()
        except PermissionGateError as e:
            missing = e.snapshot.missing() if e.snapshot is not None else []
            logger.error("supervisor_start_blocked", missing=missing)
            return StartReport(ok=False, missing=missing, error=str(e))

        started = []
        for key in self._settings.workers:
            try:
                if await self.start_worker(key):
                    started.append(key)
            except PermissionGateError as e:
                # Permissions were revoked mid-startup
                logger.error("supervisor_start_blocked", worker=key, error=str(e))
                return StartReport(ok=False, started=started, missing=snapshot.missing(), error=str(e))
        self._ensure_health_loop()
        logger.info("supervisor_started", workers=started)
        return StartReport(ok=True, started=started)

    async def start_worker(self, key: str) -> bool:
        """Spawn a worker unless it is already tracked. Returns True if spawned."""
        if key in self._records or key in self._starting:
            return False
        get_concern(key)

        snapshot = self._gate.snapshot()
        if not snapshot.all_granted:
            raise PermissionGateError(
                f"Cannot start {key}: missing permissions {', '.join(snapshot.missing())}",
                snapshot=snapshot,
            )

        pending = self._restart_tasks.pop(key, None)
        if pending is not None and pending is not asyncio.current_task():
            pending.cancel()

        self._starting.add(key)
        self._states[key] = WorkerState.STARTING
        try:
            process = await self._spawner(key, self._settings)
        except Exception as e:
            logger.error("worker_spawn_failed", worker=key, error=str(e))
            self._states[key] = WorkerState.CRASHED
            await self._emit("worker.spawn_failed", {"worker": key, "error": str(e)[:300]})
            await self._schedule_restart(key)
            return False
        finally:
            self._starting.discard(key)

        now = self._clock()
        record = WorkerRecord(
            key=key,
            process=process,
            pid=getattr(process, "pid", None),
            started_at=now,
            restart_count=self._restart_counts.get(key, 0),
            last_heartbeat_at=now,
        )
        self._records[key] = record
        record.tasks = [
            asyncio.create_task(self._read_stdout(record)),
            asyncio.create_task(self._read_stderr(record)),
        ]
        record.exit_task = asyncio.create_task(self._watch_exit(record))
        self._spawn_background(self._ping_after_delay(record))

        logger.info("worker_spawned", worker=key, pid=record.pid, restart_count=record.restart_count)
        await self._emit("worker.started", {
            "worker": key,
            "pid": record.pid,
            "restart_count": record.restart_count,
        })
        return True

    # ── Stopping ──────────────────────────────────────────────────────────

    async def stop_worker(self, key: str, wait: bool = False) -> bool:
        """Stop a worker for good. It is not restarted."""
        self._cancel_restart(key)
        record = self._records.get(key)
        if record is None:
            record = self._exiting.get(key)
            if record is None:
                return False
            # Already on its way out (stale); make sure it stays down
            self._keep_down(record)
        else:
            await self._stop_record(record, reason="stopped", restart=False)
        if wait and record.exit_task is not None:
            await asyncio.gather(record.exit_task, return_exceptions=True)
        return True

    async def restart_worker(self, key: str) -> bool:
        await self.stop_worker(key, wait=True)
        return await self.start_worker(key)

    async def stop_all(self) -> None:
        for key in list(self._restart_tasks):
            self._cancel_restart(key)
        for record in list(self._exiting.values()):
            self._keep_down(record)
        for record in list(self._records.values()):
            await self._stop_record(record, reason="stopped", restart=False)

    async def shutdown(self) -> None:
        """Stop every worker, wait for them to be reaped, cancel background work."""
        self._closing = True
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        records = [*self._records.values(), *self._exiting.values()]
        exiting = [r.exit_task for r in records if r.exit_task is not None]
        await self.stop_all()
        if exiting:
            await asyncio.gather(*exiting, return_exceptions=True)

        leftovers = list(self._background)
        for task in leftovers:
            task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)
        logger.info("supervisor_shutdown")

    async def _stop_record(self, record: WorkerRecord, reason: str, restart: bool) -> None:
        if self._records.get(record.key) is record:
            del self._records[record.key]
        self._exiting[record.key] = record
        record.stop_reason = reason
        record.restart_on_exit = restart
        if record.state is not WorkerState.STALE:
            record.state = WorkerState.STOPPING
        self._states[record.key] = record.state

        self._write(record, protocol.command(CMD_STOP))
        self._spawn_background(self._kill_after_grace(record))
        await self._emit("worker.stopped", {
            "worker": record.key,
            "pid": record.pid,
            "reason": reason,
        })

    def _keep_down(self, record: WorkerRecord) -> None:
        record.restart_on_exit = False
        record.stop_reason = "stopped"
        logger.info("worker_restart_cancelled", worker=record.key, pid=record.pid)

    async def _kill_after_grace(self, record: WorkerRecord) -> None:
        if record.process.returncode is not None:
            return
        try:
            await asyncio.wait_for(record.process.wait(), timeout=self._settings.stop_grace_period)
        except asyncio.TimeoutError:
            logger.warning("worker_force_kill", worker=record.key, pid=record.pid)
            try:
                record.process.kill()
            except ProcessLookupError:
                pass

    # ── Exit and restart ──────────────────────────────────────────────────

    async def _watch_exit(self, record: WorkerRecord) -> None:
        code = await record.process.wait()
        record.exit_code = code
        # Let the readers drain whatever the worker wrote before exiting
        await asyncio.gather(*record.tasks, return_exceptions=True)

        if self._records.get(record.key) is record:
            del self._records[record.key]
        if self._exiting.get(record.key) is record:
            del self._exiting[record.key]

        restart = record.restart_on_exit and not self._closing
        logger.info(
            "worker_exited",
            worker=record.key, pid=record.pid, exit_code=code,
            reason=record.stop_reason, restart=restart,
        )
        await self._emit("worker.exited", {
            "worker": record.key,
            "pid": record.pid,
            "exit_code": code,
            "reason": record.stop_reason,
        })

        if not restart:
            if record.key not in self._records and record.key not in self._starting:
                self._states[record.key] = WorkerState.STOPPED
            return
        if record.stop_reason is None:
            self._states[record.key] = WorkerState.CRASHED
        await self._schedule_restart(record.key)

    async def _schedule_restart(self, key: str) -> None:
        if self._closing:
            return
        existing = self._restart_tasks.get(key)
        if existing is not None and not existing.done():
            return
        count = self._restart_counts.get(key, 0) + 1
        self._restart_counts[key] = count
        delay = self._policy.delay(count)
        self._states[key] = WorkerState.RESTARTING
        self._restart_tasks[key] = asyncio.create_task(self._restart_after(key, delay))
        logger.info("worker_restart_scheduled", worker=key, restart_count=count, delay_s=delay)
        await self._emit("worker.restarting", {
            "worker": key,
            "restart_count": count,
            "delay": delay,
        })

    async def _restart_after(self, key: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._restart_tasks.get(key) is asyncio.current_task():
            del self._restart_tasks[key]
        if self._closing:
            return
        try:
            await self.start_worker(key)
        except PermissionGateError as e:
            logger.warning("worker_restart_blocked", worker=key, error=str(e))
            self._states[key] = WorkerState.STOPPED

    def _cancel_restart(self, key: str) -> None:
        task = self._restart_tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    # ── Channel ───────────────────────────────────────────────────────────

    async def _read_stdout(self, record: WorkerRecord) -> None:
        stream = record.process.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                logger.warning("worker_line_too_long", worker=record.key, error=str(e))
                continue
            if not line:
                break
            if not line.strip():
                continue
            try:
                message = protocol.decode(line)
            except ProtocolError as e:
                logger.warning("worker_bad_message", worker=record.key, error=str(e))
                continue
            await self._route(record, message)

    async def _route(self, record: WorkerRecord, message: Heartbeat | WorkerEvent | Command) -> None:
        if record.state is WorkerState.STARTING:
            record.state = WorkerState.RUNNING
            if self._records.get(record.key) is record:
                self._states[record.key] = WorkerState.RUNNING

        if isinstance(message, Heartbeat):
            record.last_heartbeat_at = self._clock()
        elif isinstance(message, WorkerEvent):
            await self._emit("worker.event", {
                "worker": record.key,
                "payload": message.payload,
                "timestamp": message.timestamp,
            })
        else:
            logger.warning("worker_unexpected_message", worker=record.key, kind=message.kind)

    async def _read_stderr(self, record: WorkerRecord) -> None:
        stream = record.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("worker_log", worker=record.key, line=text[:500])

    def _write(self, record: WorkerRecord, message: Command) -> bool:
        stdin = record.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(protocol.encode(message))
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug("worker_write_failed", worker=record.key, error=str(e))
            return False
        return True

    def send_command(self, key: str, cmd: str, **args: Any) -> bool:
        """Fire-and-forget command to one worker. False if it is not running."""
        record = self._records.get(key)
        if record is None:
            return False
        return self._write(record, protocol.command(cmd, **args))

    def broadcast_command(self, cmd: str, **args: Any) -> list[str]:
        """Send a command to every live worker; returns the keys it reached."""
        return [key for key in list(self._records) if self.send_command(key, cmd, **args)]

    async def _ping_after_delay(self, record: WorkerRecord) -> None:
        await asyncio.sleep(self._settings.ping_delay)
        if self._records.get(record.key) is record:
            self._write(record, protocol.command(CMD_PING))

    # ── Health ────────────────────────────────────────────────────────────

    async def check_health(self) -> list[str]:
        """One health tick. Workers silent past the threshold are replaced."""
        now = self._clock()
        stale = []
        for record in list(self._records.values()):
            silent = now - record.last_heartbeat_at
            if silent <= self._settings.stale_threshold:
                continue
            stale.append(record.key)
            record.state = WorkerState.STALE
            logger.warning("worker_stale", worker=record.key, silent_s=round(silent, 1))
            await self._emit("worker.stale", {
                "worker": record.key,
                "pid": record.pid,
                "silent_s": round(silent, 1),
            })
            await self._stop_record(record, reason="stale", restart=True)
        return stale

    def _ensure_health_loop(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error("supervisor_health_check_failed", error=str(e))

    # ── Status ────────────────────────────────────────────────────────────

    def get_status(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        keys = list(self._settings.workers)
        keys += [k for k in self._records if k not in keys]
        status: dict[str, dict[str, Any]] = {}
        for key in keys:
            record = self._records.get(key)
            if record is None:
                status[key] = {
                    "state": self._states.get(key, WorkerState.NOT_STARTED).value,
                    "running": False,
                    "pid": None,
                    "started_at": None,
                    "restart_count": self._restart_counts.get(key, 0),
                    "last_heartbeat_at": None,
                    "uptime_s": 0,
                }
                continue
            status[key] = {
                "state": record.state.value,
                "running": True,
                "pid": record.pid,
                "started_at": record.started_at,
                "restart_count": record.restart_count,
                "last_heartbeat_at": record.last_heartbeat_at,
                "uptime_s": int(now - record.started_at),
            }
        return status

    # ── Internals ─────────────────────────────────────────────────────────

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source="supervisor")
