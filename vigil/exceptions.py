"""Custom exception hierarchy for vigil."""

from __future__ import annotations

from typing import Any


class VigilError(Exception):
    """Base for all vigil errors."""


class ProtocolError(VigilError):
    """A line on the worker channel is not one of the known message kinds."""


class UnknownWorkerError(VigilError):
    """No worker concern is registered under the given key."""


class UnknownPermissionError(VigilError):
    """No permission is tracked under the given key."""


class ProviderLoadError(VigilError):
    """The detection provider target could not be imported."""


class PermissionGateError(VigilError):
    """Worker startup attempted while required permissions are missing."""

    def __init__(self, message: str, snapshot: Any = None) -> None:
        super().__init__(message)
        self.snapshot = snapshot


class CapabilityUnavailableError(VigilError):
    """The detection provider does not implement a named operation."""
