"""Worker concerns — what each monitoring worker samples and how.

A concern is plain configuration for the generic WorkerRuntime: polling
interval, the provider operations it needs, a sample function and the
limited payload it reports when the provider cannot serve it. Sample
functions run in a worker thread and may block.
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import orjson

from vigil.config import VigilSettings
from vigil.exceptions import CapabilityUnavailableError, UnknownWorkerError

_logger = logging.getLogger(__name__)

Payload = dict[str, Any]
SampleFn = Callable[["ConcernContext"], "Payload | None"]
HookFn = Callable[["ConcernContext"], "Payload | None"]
CommandFn = Callable[["ConcernContext", dict[str, Any]], "Payload | None"]


@dataclass
class ConcernContext:
    """Per-run state handed to every concern function."""

    key: str
    settings: VigilSettings
    operations: dict[str, Callable[..., Any]] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    counter: int = 0

    def has(self, name: str) -> bool:
        return name in self.operations

    def call(self, name: str, *args: Any) -> Any:
        op = self.operations.get(name)
        if op is None:
            raise CapabilityUnavailableError(f"{self.key}: provider has no '{name}'")
        return op(*args)

    def next_count(self) -> int:
        count = self.counter
        self.counter += 1
        return count


@dataclass(frozen=True)
class WorkerSpec:
    """Static description of one monitoring concern."""

    key: str
    display_name: str
    interval: float
    capabilities: tuple[str, ...]
    sample: SampleFn
    fallback_data: HookFn
    optional: tuple[str, ...] = ()
    on_start: HookFn | None = None
    on_stop: HookFn | None = None
    on_fallback: HookFn | None = None
    commands: dict[str, CommandFn] = field(default_factory=dict)


# ── process-watch ─────────────────────────────────────────────────────────────


def match_blacklist(snapshot: list[dict[str, Any]], blacklist: list[str]) -> Payload:
    """Flag processes whose name or path contains a blacklisted term."""
    terms = [t.lower() for t in blacklist if t]
    matches = []
    for proc in snapshot:
        name = str(proc.get("name") or "")
        path = str(proc.get("path") or "")
        lowered = (name.lower(), path.lower())
        if any(t in lowered[0] or t in lowered[1] for t in terms):
            matches.append({"pid": proc.get("pid"), "name": name, "path": path})
    return {
        "blacklisted_found": len(matches) > 0,
        "matches": matches,
        "total_processes": len(snapshot),
        "max_threat_level": "HIGH" if matches else "NONE",
        "timestamp": time.time(),
        "source": "native",
    }


def _sample_processes(ctx: ConcernContext) -> Payload | None:
    snapshot = ctx.call("get_process_snapshot")
    if not snapshot:
        return None
    if not isinstance(snapshot, list):
        raise ValueError(f"process snapshot is {type(snapshot).__name__}, expected list")
    return match_blacklist(snapshot, ctx.settings.process_blacklist)


def _process_fallback(ctx: ConcernContext) -> Payload:
    return {"blacklisted_found": False, "matches": []}


# ── device-watch ──────────────────────────────────────────────────────────────


def _sample_devices(ctx: ConcernContext) -> Payload | None:
    devices = ctx.call("get_connected_devices")
    if not devices:
        return None
    if isinstance(devices, list):
        return {"devices": devices, "timestamp": time.time(), "source": "native"}
    return dict(devices)


def _device_fallback(ctx: ConcernContext) -> Payload:
    return {"event": "heartbeat", "devices": []}


# ── bt-watch ──────────────────────────────────────────────────────────────────


def _sample_bluetooth(ctx: ConcernContext) -> Payload | None:
    raw = ctx.call("get_bluetooth_status")
    if not raw:
        return None
    data = orjson.loads(raw) if isinstance(raw, (str, bytes)) else dict(raw)
    devices = data.get("devices") or []
    return {
        "enabled": data.get("enabled"),
        "devices": [d.get("name") for d in devices if d.get("name")],
        "connectedDevices": [d.get("name") for d in devices if d.get("connected")],
        "timestamp": time.time(),
        "count": ctx.next_count(),
        "source": "native",
        "platform": sys.platform,
        "error": data.get("error"),
    }


def _bluetooth_fallback(ctx: ConcernContext) -> Payload:
    return {
        "enabled": False,
        "devices": [],
        "platform": sys.platform,
    }


# ── screen-watch ──────────────────────────────────────────────────────────────


def _sample_screen(ctx: ConcernContext) -> Payload | None:
    status = ctx.call("get_current_screen_status")
    if not status:
        return None
    payload = dict(status)
    if ctx.has("detect_recording_and_overlays"):
        # Recording detection is best effort; it never degrades the worker
        try:
            recording = ctx.call("detect_recording_and_overlays")
        except Exception as e:
            _logger.error("[%s] Error detecting recording/overlays: %s", ctx.key, e)
            recording = None
        if recording and recording.get("eventType") != "heartbeat":
            payload["recording"] = recording
            payload["isRecording"] = bool(recording.get("isRecording"))
    return payload


def _screen_fallback(ctx: ConcernContext) -> Payload:
    return {
        "mirroring": False,
        "splitScreen": False,
        "displays": ["Built-in Display"],
        "externalDisplays": [],
        "externalKeyboards": [],
        "externalDevices": [],
        "platform": sys.platform,
    }


# ── notification-watch ────────────────────────────────────────────────────────


def _sample_notifications(ctx: ConcernContext) -> Payload | None:
    notifications = ctx.call("get_current_notifications") or []
    return {
        "eventType": "notifications-found" if notifications else "heartbeat",
        "notifications": list(notifications),
        "count": len(notifications),
        "timestamp": time.time(),
        "source": "native",
    }


def _notification_fallback(ctx: ConcernContext) -> Payload:
    return {
        "eventType": "heartbeat",
        "sourceApp": None,
        "pid": 0,
        "title": None,
        "body": None,
        "notificationId": None,
        "confidence": 0,
    }


# ── vm-detect ─────────────────────────────────────────────────────────────────


def _sample_vm(ctx: ConcernContext) -> Payload | None:
    result = ctx.call("detect_virtual_machine")
    return dict(result) if result else None


def _vm_fallback(ctx: ConcernContext) -> Payload:
    return {
        "isInsideVM": False,
        "detectedVM": "Unknown",
        "detectionMethod": "unavailable",
        "runningVMProcesses": [],
        "vmIndicators": [],
    }


# ── clipboard-worker ──────────────────────────────────────────────────────────

PRIVACY_MODES = {"METADATA_ONLY": 0, "REDACTED": 1, "FULL": 2}
_CLIPBOARD_SETTLE_SECONDS = 1.0


def _clipboard_start(ctx: ConcernContext) -> Payload | None:
    ctx.state.update(
        privacy_mode=ctx.settings.clipboard_privacy_mode,
        last_hash=None,
        last_formats=None,
        cleared_on_init=False,
        settled_at=None,
    )
    if ctx.has("clear_clipboard"):
        try:
            if ctx.call("clear_clipboard"):
                ctx.state["cleared_on_init"] = True
                ctx.state["settled_at"] = time.monotonic() + _CLIPBOARD_SETTLE_SECONDS
            else:
                _logger.error("[%s] Failed to clear clipboard on initialization", ctx.key)
        except Exception as e:
            _logger.error("[%s] Error clearing clipboard on initialization: %s", ctx.key, e)
    if ctx.has("set_clipboard_privacy_mode"):
        ctx.call("set_clipboard_privacy_mode", ctx.state["privacy_mode"])
    return None


def _clipboard_initialized(ctx: ConcernContext) -> bool:
    settled_at = ctx.state.get("settled_at")
    return (
        bool(ctx.state.get("cleared_on_init"))
        and settled_at is not None
        and time.monotonic() >= settled_at
    )


def _clear_clipboard_content(ctx: ConcernContext) -> bool:
    if not ctx.has("clear_clipboard"):
        return False
    try:
        cleared = bool(ctx.call("clear_clipboard"))
    except Exception as e:
        _logger.error("[%s] Error clearing clipboard content: %s", ctx.key, e)
        return False
    if cleared:
        ctx.state["last_hash"] = None
        ctx.state["last_formats"] = None
    return cleared


def _sample_clipboard(ctx: ConcernContext) -> Payload | None:
    snapshot = ctx.call("get_clipboard_snapshot")
    if not snapshot:
        return None
    snapshot = dict(snapshot)
    formats = orjson.dumps(snapshot.get("clipFormats") or []).decode()
    content_hash = snapshot.get("contentHash")

    changed = False
    if ctx.state.get("last_formats") != formats:
        changed = True
    if content_hash and ctx.state.get("last_hash") != content_hash:
        changed = True
    # Even in METADATA_ONLY mode a preview means something was copied
    if snapshot.get("contentPreview"):
        changed = True

    event_type = "heartbeat"
    initialized = _clipboard_initialized(ctx)
    if changed:
        if initialized and ctx.settings.clipboard_active_clearing:
            event_type = "clipboard-cleared"
            _clear_clipboard_content(ctx)
        else:
            event_type = "clipboard-changed"
        ctx.state["last_formats"] = formats
        ctx.state["last_hash"] = content_hash

    now = time.time()
    payload = {
        **snapshot,
        "eventType": event_type,
        "module": ctx.key,
        "timestamp": now,
        "count": ctx.next_count(),
        "source": "native",
        "privacyMode": ctx.state.get("privacy_mode"),
        "hasChanged": changed,
        "activeClearingEnabled": ctx.settings.clipboard_active_clearing,
        "currentStatus": "content-detected-and-cleared" if changed and initialized else "monitoring",
        "clearingStrategy": "automatic",
    }
    if event_type == "clipboard-cleared":
        payload["contentPreview"] = "[CLIPBOARD CLEARED - Content was automatically removed]"
        payload["originalContent"] = snapshot.get("contentPreview") or "[Unknown content]"
        payload["clearingTimestamp"] = now
    return payload


def _clipboard_set_privacy_mode(ctx: ConcernContext, args: dict[str, Any]) -> Payload | None:
    mode = args.get("mode")
    numeric = PRIVACY_MODES.get(mode) if isinstance(mode, str) else mode
    if numeric not in PRIVACY_MODES.values():
        _logger.warning("[%s] Ignoring unknown privacy mode: %r", ctx.key, mode)
        return None
    if numeric != ctx.state.get("privacy_mode"):
        ctx.state["privacy_mode"] = numeric
        _logger.info("[%s] Privacy mode changed to %s (%d)", ctx.key, mode, numeric)
        if ctx.has("set_clipboard_privacy_mode"):
            ctx.call("set_clipboard_privacy_mode", numeric)
    return None


def _clipboard_snapshot(ctx: ConcernContext, args: dict[str, Any]) -> Payload | None:
    if not ctx.has("get_clipboard_snapshot"):
        _logger.warning("[%s] Clipboard snapshot not available", ctx.key)
        return None
    snapshot = ctx.call("get_clipboard_snapshot") or {}
    return {
        **snapshot,
        "eventType": "snapshot",
        "module": ctx.key,
        "timestamp": time.time(),
        "count": ctx.counter,
        "source": "native",
    }


def _clipboard_fallback(ctx: ConcernContext) -> Payload:
    return {
        "eventType": "heartbeat",
        "sourceApp": None,
        "pid": None,
        "clipFormats": [],
        "contentPreview": None,
        "contentHash": None,
        "isSensitive": False,
        "privacyMode": ctx.state.get("privacy_mode", ctx.settings.clipboard_privacy_mode),
    }


# ── focus-idle-watch ──────────────────────────────────────────────────────────


def _sample_focus_idle(ctx: ConcernContext) -> Payload | None:
    status = ctx.call("get_current_focus_idle_status")
    return dict(status) if status else None


def _focus_idle_fallback(ctx: ConcernContext) -> Payload:
    return {"eventType": "heartbeat", "details": {}}


# ── notification-blocker ──────────────────────────────────────────────────────


def _blocker_event(ctx: ConcernContext, **fields: Any) -> Payload:
    return {**fields, "timestamp": time.time(), "count": ctx.next_count()}


def _start_exam(ctx: ConcernContext, args: dict[str, Any] | None = None) -> Payload | None:
    ctx.state["exam_active"] = True
    try:
        if not ctx.call("enable_notification_blocking"):
            raise RuntimeError("provider refused to enable notification blocking")
    except Exception as e:
        _logger.error("[%s] Failed to enable notification blocking: %s", ctx.key, e)
        return _blocker_event(
            ctx,
            eventType="error",
            reason="blocking-enable-failed",
            message=str(e),
            source="worker",
        )
    return _blocker_event(
        ctx,
        eventType="notification-blocking-enabled",
        reason="exam-started",
        isBlocked=True,
        examActive=True,
        source="native",
    )


def _stop_exam(ctx: ConcernContext, args: dict[str, Any] | None = None) -> Payload | None:
    if not ctx.state.get("exam_active"):
        return None
    ctx.state["exam_active"] = False
    if ctx.has("disable_notification_blocking"):
        try:
            if not ctx.call("disable_notification_blocking"):
                _logger.error("[%s] Failed to restore notification settings", ctx.key)
        except Exception as e:
            _logger.error("[%s] Failed to disable notification blocking: %s", ctx.key, e)
    else:
        _logger.warning("[%s] Notification blocking restore not available", ctx.key)
    return _blocker_event(
        ctx,
        eventType="notification-blocking-disabled",
        reason="exam-ended",
        isBlocked=False,
        examActive=False,
        source="native",
    )


def _sample_blocker(ctx: ConcernContext) -> Payload | None:
    if not ctx.state.get("exam_active"):
        return None
    status = dict(ctx.call("get_notification_blocker_status") or {})
    if status.get("userModified"):
        _logger.warning("[%s] User modified notification settings during the session", ctx.key)
        payload = {
            **status,
            "eventType": "violation",
            "reason": "user-modified-notification-settings",
            "violationType": "notification-settings-changed",
            "severity": "high",
            "count": ctx.next_count(),
        }
        try:
            ctx.call("enable_notification_blocking")
        except Exception as e:
            _logger.error("[%s] Failed to re-enable notification blocking: %s", ctx.key, e)
        return payload
    return {**status, "count": ctx.next_count()}


def _check_violations(ctx: ConcernContext, args: dict[str, Any]) -> Payload | None:
    return _sample_blocker(ctx)


def _blocker_unavailable(ctx: ConcernContext) -> Payload:
    return _blocker_event(
        ctx,
        eventType="error",
        reason="notification-blocking-unavailable",
        message="Platform does not support notification blocking",
        source="fallback",
    )


def _blocker_fallback(ctx: ConcernContext) -> Payload:
    active = bool(ctx.state.get("exam_active"))
    return {
        "eventType": "heartbeat",
        "reason": "notification-blocker-active",
        "isBlocked": False,
        "examActive": active,
        "platform": sys.platform,
    }


# ── Registry ──────────────────────────────────────────────────────────────────

CONCERNS: dict[str, WorkerSpec] = {
    spec.key: spec
    for spec in (
        WorkerSpec(
            key="process-watch",
            display_name="Process Monitor",
            interval=1.5,
            capabilities=("get_process_snapshot",),
            sample=_sample_processes,
            fallback_data=_process_fallback,
        ),
        WorkerSpec(
            key="device-watch",
            display_name="Device Monitor",
            interval=2.0,
            capabilities=("get_connected_devices",),
            sample=_sample_devices,
            fallback_data=_device_fallback,
        ),
        WorkerSpec(
            key="bt-watch",
            display_name="Bluetooth Monitor",
            interval=3.0,
            capabilities=("get_bluetooth_status",),
            sample=_sample_bluetooth,
            fallback_data=_bluetooth_fallback,
        ),
        WorkerSpec(
            key="screen-watch",
            display_name="Screen Monitor",
            interval=3.0,
            capabilities=("get_current_screen_status",),
            optional=("detect_recording_and_overlays",),
            sample=_sample_screen,
            fallback_data=_screen_fallback,
        ),
        WorkerSpec(
            key="notification-watch",
            display_name="Notification Monitor",
            interval=1.0,
            capabilities=("get_current_notifications",),
            sample=_sample_notifications,
            fallback_data=_notification_fallback,
        ),
        WorkerSpec(
            key="vm-detect",
            display_name="VM Detection",
            interval=10.0,
            capabilities=("detect_virtual_machine",),
            sample=_sample_vm,
            fallback_data=_vm_fallback,
        ),
        WorkerSpec(
            key="clipboard-worker",
            display_name="Clipboard",
            interval=2.0,
            capabilities=("get_clipboard_snapshot",),
            optional=("set_clipboard_privacy_mode", "clear_clipboard"),
            sample=_sample_clipboard,
            fallback_data=_clipboard_fallback,
            on_start=_clipboard_start,
            commands={
                "setPrivacyMode": _clipboard_set_privacy_mode,
                "snapshot": _clipboard_snapshot,
            },
        ),
        WorkerSpec(
            key="focus-idle-watch",
            display_name="Focus & Idle Monitor",
            interval=1.0,
            capabilities=("get_current_focus_idle_status",),
            sample=_sample_focus_idle,
            fallback_data=_focus_idle_fallback,
        ),
        WorkerSpec(
            key="notification-blocker",
            display_name="Notification Blocker",
            interval=2.0,
            capabilities=("get_notification_blocker_status", "enable_notification_blocking"),
            optional=("disable_notification_blocking",),
            sample=_sample_blocker,
            fallback_data=_blocker_fallback,
            on_start=_start_exam,
            on_stop=_stop_exam,
            on_fallback=_blocker_unavailable,
            commands={
                "startExam": _start_exam,
                "stopExam": _stop_exam,
                "checkViolations": _check_violations,
            },
        ),
    )
}


def get_concern(key: str) -> WorkerSpec:
    try:
        return CONCERNS[key]
    except KeyError:
        raise UnknownWorkerError(f"No worker concern named '{key}'") from None
