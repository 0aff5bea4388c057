"""Permission Gate — OS consent state that decides whether workers may start.

Probes run one at a time. Two consent prompts on screen at once confuse
users and some platforms drop the second, so every check and request goes
through a single lock.

Usage:
    gate = PermissionGate(NativePermissionProber(handle), bus=bus)
    snapshot = await gate.wait_for_ready()   # raises PermissionGateError
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from vigil.config import VigilSettings, settings as default_settings
from vigil.events.bus import EventBus
from vigil.exceptions import PermissionGateError, UnknownPermissionError
from vigil.permissions.definitions import (
    Permission,
    PermissionSnapshot,
    PermissionStatus,
    default_permissions,
)
from vigil.permissions.prober import PermissionProber

_logger = logging.getLogger(__name__)

SettingsOpener = Callable[[Permission], "Awaitable[None] | None"]
ChangeCallback = Callable[[str, PermissionStatus, PermissionSnapshot], Any]


def log_settings_hint(permission: Permission) -> None:
    _logger.warning(
        "Please enable '%s' in the system privacy settings (%s)",
        permission.display_name, permission.settings_pane or "Security & Privacy",
    )


class PermissionGate:
    """Tracks permission state and answers whether workers may start."""

    def __init__(
        self,
        prober: PermissionProber,
        permissions: dict[str, Permission] | None = None,
        bus: EventBus | None = None,
        settings: VigilSettings | None = None,
        settings_opener: SettingsOpener = log_settings_hint,
    ) -> None:
        self._prober = prober
        self._permissions = permissions if permissions is not None else default_permissions()
        self._bus = bus
        self._settings = settings or default_settings
        self._open_settings = settings_opener
        self._callbacks: list[ChangeCallback] = []
        self._lock = asyncio.Lock()

    def keys(self) -> list[str]:
        return list(self._permissions)

    def get(self, key: str) -> Permission:
        try:
            return self._permissions[key].model_copy(deep=True)
        except KeyError:
            raise UnknownPermissionError(f"Unknown permission: '{key}'") from None

    def snapshot(self) -> PermissionSnapshot:
        return PermissionSnapshot.of(self._permissions)

    def missing(self) -> list[Permission]:
        return [
            p.model_copy(deep=True) for p in self._permissions.values()
            if p.required and p.status != PermissionStatus.GRANTED
        ]

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a callback for status changes; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def check_all(self) -> PermissionSnapshot:
        async with self._lock:
            for key in list(self._permissions):
                await self._probe(key)
        snapshot = self.snapshot()
        _logger.info(
            "Permissions checked: all_granted=%s missing=%s",
            snapshot.all_granted, snapshot.missing(),
        )
        return snapshot

    async def check(self, key: str) -> PermissionStatus:
        self._require(key)
        async with self._lock:
            return await self._probe(key)

    async def request(self, key: str) -> bool:
        """Ask the OS for a permission. True only when a grant is confirmed."""
        permission = self._require(key)
        async with self._lock:
            granted = await self._prober.request(key)
            if granted:
                await self._set_status(key, PermissionStatus.GRANTED, None)
                return True
            if granted is None:
                _logger.info("No native request for %s, opening system settings", key)
            try:
                result = self._open_settings(permission.model_copy(deep=True))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                _logger.error("Failed to open settings for %s: %s", key, e)
            status = await self._probe(key)
        return status == PermissionStatus.GRANTED

    async def wait_for_ready(
        self,
        retries: int | None = None,
        delay: float | None = None,
    ) -> PermissionSnapshot:
        """Re-check until every required permission is granted, or give up."""
        attempts = max(1, retries if retries is not None else self._settings.permission_wait_retries)
        delay = self._settings.permission_retry_delay if delay is None else delay

        snapshot = self.snapshot()
        for attempt in range(1, attempts + 1):
            snapshot = await self.check_all()
            if snapshot.ready_to_start:
                return snapshot
            _logger.warning(
                "Permissions not ready (attempt %d/%d), missing: %s",
                attempt, attempts, ", ".join(snapshot.missing()),
            )
            if attempt < attempts:
                await asyncio.sleep(delay)

        raise PermissionGateError(
            f"Required permissions missing: {', '.join(snapshot.missing())}",
            snapshot=snapshot,
        )

    async def reset(self) -> None:
        for permission in self._permissions.values():
            permission.status = PermissionStatus.UNKNOWN
            permission.last_error = None
        await self._notify("all", PermissionStatus.UNKNOWN, None)

    # ── Internals ─────────────────────────────────────────────────────────

    def _require(self, key: str) -> Permission:
        if key not in self._permissions:
            raise UnknownPermissionError(f"Unknown permission: '{key}'")
        return self._permissions[key]

    async def _probe(self, key: str) -> PermissionStatus:
        await self._set_status(key, PermissionStatus.CHECKING, self._permissions[key].last_error)
        try:
            result = await self._prober.check(key)
        except Exception as e:
            # An ambiguous probe is a denial
            _logger.error("Permission probe for %s failed: %s", key, e)
            await self._set_status(key, PermissionStatus.DENIED, str(e))
            return PermissionStatus.DENIED
        status = PermissionStatus.GRANTED if result.granted else PermissionStatus.DENIED
        await self._set_status(key, status, None if result.granted else result.error)
        return status

    async def _set_status(self, key: str, status: PermissionStatus, error: str | None) -> None:
        permission = self._permissions[key]
        permission.status = status
        permission.last_error = error
        if status != PermissionStatus.CHECKING:
            _logger.info("Permission %s: %s", key, status.value.upper())
        await self._notify(key, status, error)

    async def _notify(self, key: str, status: PermissionStatus, error: str | None) -> None:
        snapshot = self.snapshot()
        for callback in list(self._callbacks):
            try:
                result = callback(key, status, snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                _logger.error("Permission change callback failed: %s", e)
        if self._bus:
            await self._bus.emit("permission.changed", {
                "key": key,
                "status": status.value,
                "error": error,
                "all_granted": snapshot.all_granted,
            }, source="permission_gate")
