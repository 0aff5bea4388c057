"""Global configuration — loaded from environment variables."""

from pathlib import Path

import orjson
from pydantic_settings import BaseSettings

DEFAULT_WORKERS = [
    "process-watch",
    "device-watch",
    "bt-watch",
    "screen-watch",  # includes recording/overlay detection
    "notification-watch",
    "vm-detect",
    "clipboard-worker",
    "focus-idle-watch",
    "notification-blocker",
]

DEFAULT_PROCESS_BLACKLIST = [
    "chrome", "Google Chrome",
    "firefox", "Mozilla Firefox",
    "safari",
    "opera",
    "edge", "Microsoft Edge",
    "brave",
    "tor",
]

# Settings a worker subprocess needs; exported to its environment on spawn
_WORKER_FIELDS = (
    "detection_provider",
    "heartbeat_interval",
    "fallback_interval",
    "detection_hang_threshold",
    "process_blacklist",
    "clipboard_privacy_mode",
    "clipboard_active_clearing",
    "log_level",
    "log_json",
)


class VigilSettings(BaseSettings):
    workers: list[str] = list(DEFAULT_WORKERS)
    detection_provider: str = ""  # "package.module" or "package.module:attr"

    # Worker runtime
    heartbeat_interval: float = 5.0
    fallback_interval: float = 10.0
    detection_hang_threshold: float = 60.0  # heartbeats pause past this

    # Supervisor
    stale_threshold: float = 30.0
    health_check_interval: float = 15.0
    ping_delay: float = 1.0
    stop_grace_period: float = 5.0
    restart_base_delay: float = 2.0
    restart_backoff_cap: int = 5

    # Permission gate
    permission_probe_timeout: float = 10.0
    permission_wait_retries: int = 3
    permission_retry_delay: float = 2.0

    # Concern tuning
    process_blacklist: list[str] = list(DEFAULT_PROCESS_BLACKLIST)
    clipboard_privacy_mode: int = 2  # 0 = METADATA_ONLY, 1 = REDACTED, 2 = FULL
    clipboard_active_clearing: bool = True

    log_level: str = "INFO"
    log_json: bool = False
    export_dir: Path = Path(".vigil/exports")

    model_config = {"env_prefix": "VIGIL_"}

    def worker_env(self) -> dict[str, str]:
        """Environment variables that carry worker settings into a child process."""
        env: dict[str, str] = {}
        for name in _WORKER_FIELDS:
            value = getattr(self, name)
            if isinstance(value, (list, dict)):
                text = orjson.dumps(value).decode()
            elif isinstance(value, bool):
                text = "true" if value else "false"
            else:
                text = str(value)
            env[f"VIGIL_{name.upper()}"] = text
        return env


settings = VigilSettings()
