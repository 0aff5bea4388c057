"""Signal Aggregator — one violation feed from many workers.

Keeps two views:
  - active: what each worker's latest payload says right now
  - history: every distinct violation ever seen, in arrival order

Usage:
    aggregator = SignalAggregator(bus=bus)   # subscribes to worker.event
    ...
    aggregator.record_session_exit("Student closed the exam window")
    aggregator.write_export()
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import orjson

from vigil.aggregator.classify import Violation, classify, fingerprint
from vigil.config import settings
from vigil.events.bus import Event, EventBus
from vigil.types import Severity

_logger = logging.getLogger(__name__)

HostCallback = Callable[[str, dict[str, Any], float], Any]

EXIT_WORKER = "system"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class SignalAggregator:
    def __init__(self, bus: EventBus | None = None, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._active: dict[str, list[Violation]] = {}
        self._history: list[Violation] = []
        self._seen: set[str] = set()
        self._module_data: dict[str, dict[str, Any]] = {}
        self._callbacks: list[HostCallback] = []
        self._exit_violation: Violation | None = None
        self._bus: EventBus | None = None
        if bus is not None:
            self.attach(bus)

    # ── Bus wiring ────────────────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        """Consume ``worker.event`` and publish ``violation.detected``."""
        if self._bus is bus:
            return
        self.detach()
        self._bus = bus
        bus.subscribe("worker.event", self._on_worker_event)

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe("worker.event", self._on_worker_event)
            self._bus = None

    async def _on_worker_event(self, event: Event) -> None:
        worker = event.data.get("worker")
        payload = event.data.get("payload")
        if not worker or not isinstance(payload, dict):
            _logger.warning("Ignoring malformed worker.event: %s", event.id)
            return
        new = self.ingest(worker, payload, event.data.get("timestamp"))
        if self._bus is not None:
            for violation in new:
                await self._bus.emit(
                    "violation.detected", violation.model_dump(mode="json"), source="aggregator",
                )

    # ── Ingest ────────────────────────────────────────────────────────────

    def on_event(self, callback: HostCallback) -> Callable[[], None]:
        """Call ``callback(worker, payload, timestamp)`` for every ingested payload."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def ingest(self, worker: str, payload: dict[str, Any], timestamp: float | None = None) -> list[Violation]:
        """Classify one payload. Returns the violations not seen before."""
        ts = float(timestamp) if timestamp is not None else self._clock()
        violations = classify(worker, payload, ts)

        self._module_data[worker] = dict(payload)
        self._active[worker] = violations

        new = []
        for violation in violations:
            if violation.id in self._seen:
                continue
            self._seen.add(violation.id)
            self._history.append(violation)
            new.append(violation)
        if new:
            _logger.info(
                "%d new violation(s) from %s: %s",
                len(new), worker, ", ".join(v.violation_type for v in new),
            )

        for callback in list(self._callbacks):
            try:
                callback(worker, payload, ts)
            except Exception as e:
                _logger.error("Aggregator callback failed: %s", e)
        return new

    def record_session_exit(self, reason: str, timestamp: float | None = None) -> Violation:
        """Record that the session was left. Only the first call counts."""
        if self._exit_violation is not None:
            return self._exit_violation
        ts = timestamp if timestamp is not None else self._clock()
        violation = Violation(
            id=f"{EXIT_WORKER}-exam-exit-{fingerprint(reason)}",
            worker=EXIT_WORKER,
            timestamp=ts,
            severity=Severity.CRITICAL,
            violation_type="exam-exit",
            subject="Exam Session",
            reason=reason,
            evidence="Exam session terminated",
        )
        self._exit_violation = violation
        if violation.id not in self._seen:
            self._seen.add(violation.id)
            self._history.append(violation)
        _logger.warning("Session exit recorded: %s", reason)
        return violation

    # ── Views ─────────────────────────────────────────────────────────────

    def active(self) -> list[Violation]:
        current = [v for vs in self._active.values() for v in vs]
        if self._exit_violation is not None:
            current.insert(0, self._exit_violation)
        return current

    def history(self, newest_first: bool = True) -> list[Violation]:
        return list(reversed(self._history)) if newest_first else list(self._history)

    def module_data(self, worker: str) -> dict[str, Any] | None:
        data = self._module_data.get(worker)
        return dict(data) if data is not None else None

    @property
    def exited(self) -> bool:
        return self._exit_violation is not None

    # ── Export ────────────────────────────────────────────────────────────

    def export_history(self, now: float | None = None) -> dict[str, Any]:
        """The full history as a JSON-ready document."""
        now = self._clock() if now is None else now
        history = list(self._history)
        summary = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        for violation in history:
            bucket = violation.severity.value.lower()
            if bucket in summary:
                summary[bucket] += 1

        return {
            "export_time": _iso(now),
            "session": {
                "start_time": _iso(min(v.timestamp for v in history)) if history else None,
                "end_time": _iso(now),
                "total_violations": len(history),
                "exited": self.exited,
                "exit_reason": self._exit_violation.reason if self._exit_violation else None,
            },
            "violations": [
                {
                    "id": v.id,
                    "timestamp": _iso(v.timestamp),
                    "worker": v.worker,
                    "subject": v.subject,
                    "violation_type": v.violation_type,
                    "severity": v.severity.value,
                    "reason": v.reason,
                    "evidence": v.evidence,
                }
                for v in history
            ],
            "violation_summary": summary,
        }

    def export_json(self, now: float | None = None) -> bytes:
        return orjson.dumps(self.export_history(now), option=orjson.OPT_INDENT_2)

    def write_export(self, path: Path | str | None = None, now: float | None = None) -> Path:
        """Write the export to ``path`` (default: a dated file under export_dir)."""
        now = self._clock() if now is None else now
        if path is None:
            day = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")
            path = settings.export_dir / f"exam-violations-{day}.json"
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.export_json(now))
        _logger.info("Exported %d violation(s) to %s", len(self._history), path)
        return path
