"""Violation classification — worker payloads in, canonical violations out.

``classify`` is pure: same worker and payload, same violations, same ids.
Ids fingerprint what was seen (subject, reason, evidence), never when, so
a condition that persists across many payloads is one history entry.
"""

from __future__ import annotations

import hashlib
from typing import Any

from pydantic import BaseModel

from vigil.types import Severity

_NUMERIC_SEVERITY = {4: Severity.CRITICAL, 3: Severity.HIGH, 2: Severity.MEDIUM}


class Violation(BaseModel):
    id: str
    worker: str
    timestamp: float
    severity: Severity
    violation_type: str
    subject: str
    reason: str
    evidence: str | None = None


def normalize_severity(value: Any, default: Severity = Severity.MEDIUM) -> Severity:
    """Map a numeric (4..1) or textual severity onto the canonical scale."""
    if isinstance(value, Severity):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _NUMERIC_SEVERITY.get(int(value), Severity.LOW)
    if isinstance(value, str) and value.strip():
        try:
            return Severity(value.strip().upper())
        except ValueError:
            return default
    return default


def fingerprint(*parts: Any) -> str:
    digest = hashlib.sha1()
    for part in parts:
        digest.update(str(part if part is not None else "").encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()[:12]


def _violation(
    worker: str,
    timestamp: float,
    severity: Severity,
    violation_type: str,
    subject: str,
    reason: str,
    evidence: str | None,
) -> Violation:
    return Violation(
        id=f"{worker}-{violation_type}-{fingerprint(subject, reason, evidence)}",
        worker=worker,
        timestamp=timestamp,
        severity=severity,
        violation_type=violation_type,
        subject=subject,
        reason=reason,
        evidence=evidence,
    )


def _embedded(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    items = payload.get("violations")
    if not isinstance(items, list):
        return []
    found = []
    for item in items:
        if not isinstance(item, dict):
            continue
        raw = item.get("severity")
        if raw is None:
            raw = item.get("threatLevel")
        subject = str(
            item.get("deviceName") or item.get("deviceId") or item.get("name") or worker
        )
        evidence = item.get("evidence")
        found.append(_violation(
            worker, ts,
            normalize_severity(raw),
            str(item.get("violationType") or item.get("type") or "violation"),
            subject,
            str(item.get("reason") or item.get("description") or "Violation reported by worker"),
            str(evidence) if evidence is not None else None,
        ))
    return found


def _process(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    if not payload.get("blacklisted_found"):
        return []
    matches = [m for m in payload.get("matches") or [] if isinstance(m, dict)]
    listed = ", ".join(f"{m.get('name')} (pid {m.get('pid')})" for m in matches)
    evidence = f"Max threat level: {payload.get('max_threat_level') or 'HIGH'}"
    if listed:
        evidence = f"{listed}; {evidence}"
    return [_violation(
        worker, ts, Severity.CRITICAL, "blacklisted-process",
        "Blacklisted Process", "Blacklisted process detected on system", evidence,
    )]


def _screen(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    sessions = payload.get("total_sessions") or 0
    captured = bool(payload.get("isScreenCaptured")) or bool(payload.get("isRecording"))
    if not captured and not (isinstance(sessions, (int, float)) and sessions > 0):
        return []
    return [_violation(
        worker, ts, Severity.CRITICAL, "screen-sharing",
        "Screen Capture", "Screen sharing or recording detected",
        f"Sessions: {sessions or 1}",
    )]


def _vm(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    if not payload.get("isInsideVM"):
        return []
    return [_violation(
        worker, ts, Severity.CRITICAL, "virtual-environment",
        "Virtual Machine", "Virtual machine environment detected",
        f"VM Type: {payload.get('detectedVM') or 'Unknown'}",
    )]


def _clipboard(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    if payload.get("eventType") != "clipboard-changed":
        return []
    return [_violation(
        worker, ts, Severity.MEDIUM, "clipboard-change",
        "Clipboard Activity", "Clipboard content changed during exam",
        f"Source: {payload.get('sourceApp') or 'Unknown'}",
    )]


def _focus(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    event_type = payload.get("eventType")
    if event_type not in ("focus-lost", "idle-start"):
        return []
    details = payload.get("details") if isinstance(payload.get("details"), dict) else {}
    return [_violation(
        worker, ts, Severity.HIGH, "focus-violation",
        "Focus/Window Switch", "Application focus lost or window switching detected",
        f"Event: {event_type}, App: {details.get('activeApp') or 'Unknown'}",
    )]


def _notification_blocker(worker: str, payload: dict[str, Any], ts: float) -> list[Violation]:
    if payload.get("eventType") != "violation":
        return []
    return [_violation(
        worker, ts,
        normalize_severity(payload.get("severity"), default=Severity.HIGH),
        "notification-violation",
        "Notification System", "Notification settings modified during exam",
        f"Type: {payload.get('violationType') or 'Settings changed'}",
    )]


_RULES = {
    "process-watch": _process,
    "screen-watch": _screen,
    "vm-detect": _vm,
    "clipboard-worker": _clipboard,
    "focus-idle-watch": _focus,
    "notification-blocker": _notification_blocker,
}


def classify(worker: str, payload: dict[str, Any], timestamp: float | None = None) -> list[Violation]:
    """Every violation a single worker payload carries."""
    if not isinstance(payload, dict):
        return []
    if timestamp is None:
        raw = payload.get("timestamp", payload.get("ts"))
        timestamp = float(raw) if isinstance(raw, (int, float)) and not isinstance(raw, bool) else 0.0

    violations = _embedded(worker, payload, timestamp)
    rule = _RULES.get(worker)
    if rule is not None:
        violations += rule(worker, payload, timestamp)
    return violations
