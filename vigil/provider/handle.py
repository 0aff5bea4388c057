"""Detection provider handle — lazy, single-initialisation access to native probes.

The provider is an opaque importable object (module or attribute) that
implements some subset of the named operations in ``DetectionProvider``.
Which subset is decided once, at load time, and never re-probed per call.

Usage:
    handle = ProviderHandle("proctor_native")
    provider = await handle.get()           # None when unavailable
    if handle.has("detect_virtual_machine"):
        result = provider.detect_virtual_machine()
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Callable, Protocol

from vigil.exceptions import ProviderLoadError

_logger = logging.getLogger(__name__)


class DetectionProvider(Protocol):
    """Every operation a provider may expose. All are synchronous and may block."""

    def get_process_snapshot(self) -> list[dict[str, Any]]: ...
    def get_connected_devices(self) -> dict[str, Any]: ...
    def get_bluetooth_status(self) -> str | dict[str, Any]: ...
    def get_current_screen_status(self) -> dict[str, Any]: ...
    def detect_recording_and_overlays(self) -> dict[str, Any]: ...
    def get_current_notifications(self) -> list[dict[str, Any]]: ...
    def detect_virtual_machine(self) -> dict[str, Any]: ...
    def get_clipboard_snapshot(self) -> dict[str, Any]: ...
    def set_clipboard_privacy_mode(self, mode: int) -> None: ...
    def clear_clipboard(self) -> bool: ...
    def get_current_focus_idle_status(self) -> dict[str, Any]: ...
    def get_notification_blocker_status(self) -> dict[str, Any]: ...
    def enable_notification_blocking(self) -> bool: ...
    def disable_notification_blocking(self) -> bool: ...
    def check_screen_recording_permission(self) -> bool: ...
    def request_screen_recording_permission(self) -> bool: ...


def load_target(target: str) -> Any:
    """Import ``package.module`` or ``package.module:attribute``."""
    module_name, _, attr = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ProviderLoadError(f"Cannot import provider module '{module_name}': {e}") from e
    if not attr:
        return module
    try:
        obj = module
        for part in attr.split("."):
            obj = getattr(obj, part)
    except AttributeError as e:
        raise ProviderLoadError(f"Provider '{target}' has no attribute '{attr}'") from e
    # A class is instantiated; a factory function is not guessed at
    return obj() if isinstance(obj, type) else obj


class ProviderHandle:
    """Lazily loaded detection provider, loaded at most once per process."""

    def __init__(self, target: str = "", provider: Any = None) -> None:
        self._target = target
        self._provider = provider
        self._loaded = provider is not None
        self._capabilities: frozenset[str] = (
            _callable_names(provider) if provider is not None else frozenset()
        )
        self._lock = asyncio.Lock()
        self._error: str | None = None

    @property
    def target(self) -> str:
        return self._target

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def available(self) -> bool:
        return self._provider is not None

    @property
    def error(self) -> str | None:
        return self._error

    async def get(self) -> Any | None:
        """Return the provider, loading it on first call. None if unavailable."""
        if self._loaded:
            return self._provider
        async with self._lock:
            if self._loaded:
                return self._provider
            self._load()
            return self._provider

    def _load(self) -> None:
        self._loaded = True
        if not self._target:
            self._error = "no detection provider configured"
            _logger.warning("No detection provider configured, workers will run in fallback mode")
            return
        try:
            self._provider = load_target(self._target)
        except ProviderLoadError as e:
            self._error = str(e)
            _logger.warning("Detection provider unavailable: %s", e)
            return
        except Exception as e:
            # Provider import side effects (native init) can fail arbitrarily
            self._error = f"{type(e).__name__}: {e}"
            _logger.error("Detection provider failed to initialise: %s", self._error)
            return
        self._capabilities = _callable_names(self._provider)
        _logger.info(
            "Detection provider '%s' loaded with %d capabilities",
            self._target, len(self._capabilities),
        )

    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def missing(self, names: tuple[str, ...] | list[str]) -> list[str]:
        return [n for n in names if n not in self._capabilities]

    def operation(self, name: str) -> Callable[..., Any] | None:
        """Resolve a named operation, or None if the provider lacks it."""
        if name not in self._capabilities:
            return None
        return getattr(self._provider, name)


def _callable_names(provider: Any) -> frozenset[str]:
    names = set()
    for name in dir(provider):
        if name.startswith("_"):
            continue
        try:
            value = getattr(provider, name)
        except Exception:
            continue
        if callable(value) and not isinstance(value, type):
            names.add(name)
    return frozenset(names)
