"""CLI runtime context — bridges sync CLI to the async supervisor."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from vigil.aggregator.aggregator import SignalAggregator
from vigil.config import VigilSettings, settings as default_settings
from vigil.events.bus import EventBus
from vigil.permissions.gate import PermissionGate
from vigil.permissions.prober import NativePermissionProber
from vigil.provider.handle import ProviderHandle
from vigil.supervisor.supervisor import Supervisor


class VigilContext:
    """Singleton runtime context that holds all subsystem instances."""

    _instance: VigilContext | None = None

    def __init__(self, settings: VigilSettings | None = None) -> None:
        self.settings = settings or default_settings
        self.event_bus = EventBus()

        # Loaded lazily, once; workers load their own copy in their process
        self.provider = ProviderHandle(self.settings.detection_provider)

        self.gate = PermissionGate(
            NativePermissionProber(self.provider, timeout=self.settings.permission_probe_timeout),
            bus=self.event_bus,
            settings=self.settings,
        )
        self.supervisor = Supervisor(self.gate, bus=self.event_bus, settings=self.settings)
        self.aggregator = SignalAggregator(bus=self.event_bus)

    @classmethod
    def get(cls, settings: VigilSettings | None = None) -> VigilContext:
        if cls._instance is None:
            cls._instance = cls(settings)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
