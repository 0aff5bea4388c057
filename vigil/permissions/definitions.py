"""Permission records and the per-platform set of required permissions."""

from __future__ import annotations

import re
import sys
from enum import Enum

from pydantic import BaseModel, Field


class PermissionStatus(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    GRANTED = "granted"
    DENIED = "denied"


class Permission(BaseModel):
    """One OS capability the workers need consent for."""

    key: str
    display_name: str
    description: str = ""
    status: PermissionStatus = PermissionStatus.UNKNOWN
    required: bool = True
    dependent_workers: set[str] = Field(default_factory=set)
    last_error: str | None = None
    settings_pane: str = ""


class PermissionSnapshot(BaseModel):
    all_granted: bool
    ready_to_start: bool
    permissions: dict[str, Permission] = Field(default_factory=dict)

    @classmethod
    def of(cls, permissions: dict[str, Permission]) -> PermissionSnapshot:
        required = [p for p in permissions.values() if p.required]
        all_granted = all(p.status == PermissionStatus.GRANTED for p in required)
        checking = any(p.status == PermissionStatus.CHECKING for p in permissions.values())
        return cls(
            all_granted=all_granted,
            ready_to_start=all_granted and not checking,
            permissions={k: p.model_copy(deep=True) for k, p in permissions.items()},
        )

    def missing(self) -> list[str]:
        return [
            k for k, p in self.permissions.items()
            if p.required and p.status != PermissionStatus.GRANTED
        ]

    def blocked_workers(self) -> set[str]:
        """Workers that depend on at least one missing permission."""
        blocked: set[str] = set()
        for key in self.missing():
            blocked |= self.permissions[key].dependent_workers
        return blocked


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def check_operation(key: str) -> str:
    """Provider operation that probes a permission: screenRecording → check_screen_recording_permission."""
    return f"check_{_snake(key)}_permission"


def request_operation(key: str) -> str:
    return f"request_{_snake(key)}_permission"


def default_permissions(platform: str | None = None) -> dict[str, Permission]:
    """Fresh permission table for a platform, in probe order."""
    platform = platform or sys.platform
    windows = platform.startswith("win")
    os_name = "Windows" if windows else "macOS"

    perms = [
        Permission(
            key="accessibility",
            display_name="Accessibility",
            description=f"Required for focus tracking and idle detection ({os_name})",
            dependent_workers={"focus-idle-watch", "notification-watch"},
            settings_pane="Privacy_Accessibility",
        ),
        Permission(
            key="screenRecording",
            display_name="Screen Recording",
            description=f"Required for display monitoring and overlay detection ({os_name})",
            dependent_workers={"screen-watch", "notification-watch"},
            settings_pane="Privacy_ScreenCapture",
        ),
        Permission(
            key="inputMonitoring",
            display_name="Input Monitoring",
            description=f"Required for external device detection ({os_name})",
            dependent_workers={"screen-watch"},
            settings_pane="Privacy_ListenEvent",
        ),
    ]
    if windows:
        perms += [
            Permission(
                key="registryAccess",
                display_name="Registry Access",
                description="Required for system settings and notification control (Windows)",
                dependent_workers={"notification-blocker", "vm-detect"},
                settings_pane="Privacy_Registry",
            ),
            Permission(
                key="deviceEnumeration",
                display_name="Device Enumeration",
                description="Required for hardware device detection (Windows)",
                dependent_workers={"device-watch", "screen-watch", "bt-watch"},
                settings_pane="Privacy_Devices",
            ),
            Permission(
                key="processAccess",
                display_name="Process Access",
                description="Required for application monitoring (Windows)",
                dependent_workers={"process-watch"},
                settings_pane="Privacy_Process",
            ),
            Permission(
                key="clipboardAccess",
                display_name="Clipboard Access",
                description="Required for clipboard content monitoring (Windows)",
                dependent_workers={"clipboard-worker"},
                settings_pane="Privacy_Clipboard",
            ),
        ]
    return {p.key: p for p in perms}
