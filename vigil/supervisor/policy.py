"""Restart policy — linear backoff with a ceiling."""

from __future__ import annotations

from dataclasses import dataclass

from vigil.config import VigilSettings


@dataclass(frozen=True)
class RestartPolicy:
    base_delay: float = 2.0
    cap: int = 5

    def delay(self, restart_count: int) -> float:
        """Seconds to wait before restart number ``restart_count`` (1 for the first)."""
        return self.base_delay * min(restart_count, self.cap)

    @classmethod
    def from_settings(cls, settings: VigilSettings) -> RestartPolicy:
        return cls(base_delay=settings.restart_base_delay, cap=settings.restart_backoff_cap)
