"""Permission probes.

A probe answers "is this permission granted right now?". The provider's
``check_<permission>_permission`` operation is authoritative when it
exists. Without it, a handful of permissions can be inferred from whether
a system command is able to read the data the permission protects; every
other case resolves to denied.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from vigil.permissions.definitions import check_operation, request_operation
from vigil.provider.handle import ProviderHandle

_logger = logging.getLogger(__name__)

CommandRunner = Callable[[str, float], Awaitable["tuple[int, str]"]]


@dataclass(frozen=True)
class ProbeResult:
    granted: bool
    error: str | None = None


class PermissionProber(Protocol):
    async def check(self, key: str) -> ProbeResult: ...

    async def request(self, key: str) -> bool | None:
        """True/False from native elevation, None when none is available."""
        ...


@dataclass(frozen=True)
class _ShellProbe:
    command: str
    expect: tuple[str, ...] = ()  # any of these in stdout; empty means any output

    def passes(self, output: str) -> bool:
        if not output.strip():
            return False
        if not self.expect:
            return True
        return any(token in output for token in self.expect)


_SHELL_PROBES: dict[tuple[str, str], _ShellProbe] = {
    ("darwin", "accessibility"): _ShellProbe('system_profiler SPHardwareDataType | grep "Idle Time"'),
    ("darwin", "screenRecording"): _ShellProbe(
        "system_profiler SPDisplaysDataType | head -5", ("Display",),
    ),
    ("darwin", "inputMonitoring"): _ShellProbe("system_profiler SPUSBDataType | grep -i keyboard"),
    ("win32", "accessibility"): _ShellProbe(
        'powershell "Get-Process | Where-Object {$_.MainWindowTitle -ne \\"\\"} '
        '| Select-Object -First 1 ProcessName"',
        ("ProcessName",),
    ),
    ("win32", "screenRecording"): _ShellProbe(
        "wmic desktopmonitor get Name /format:list", ("Name=", "Display"),
    ),
    ("win32", "inputMonitoring"): _ShellProbe(
        'powershell "Get-WmiObject Win32_Keyboard | Select-Object -First 1 Name"', ("Name",),
    ),
}


async def run_shell(command: str, timeout: float) -> tuple[int, str]:
    """Run a shell command, returning (exit code, stdout). Kills it on timeout."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, stdout.decode("utf-8", errors="replace")


class NativePermissionProber:
    """Probes permissions through the detection provider, then system commands."""

    def __init__(
        self,
        provider: ProviderHandle,
        timeout: float = 10.0,
        platform: str | None = None,
        run_command: CommandRunner = run_shell,
    ) -> None:
        self._provider = provider
        self._timeout = timeout
        self._platform = platform or sys.platform
        self._run_command = run_command

    async def check(self, key: str) -> ProbeResult:
        await self._provider.get()
        op = self._provider.operation(check_operation(key))
        if op is not None:
            try:
                result = await asyncio.wait_for(asyncio.to_thread(op), timeout=self._timeout)
            except asyncio.TimeoutError:
                return ProbeResult(False, f"{key} probe timed out after {self._timeout}s")
            except Exception as e:
                return ProbeResult(False, str(e))
            # Only an explicit True counts as consent
            if result is True:
                return ProbeResult(True)
            return ProbeResult(False, f"{key} permission not granted")
        return await self._check_with_command(key)

    async def _check_with_command(self, key: str) -> ProbeResult:
        probe = _SHELL_PROBES.get((self._platform, key))
        if probe is None:
            return ProbeResult(False, f"Cannot verify {key} on {self._platform}: no native probe")
        try:
            code, output = await self._run_command(probe.command, self._timeout)
        except asyncio.TimeoutError:
            return ProbeResult(False, f"{key} probe timed out after {self._timeout}s")
        except OSError as e:
            return ProbeResult(False, f"{key} probe failed: {e}")
        if code == 0 and probe.passes(output):
            return ProbeResult(True)
        return ProbeResult(False, f"Cannot verify {key} permission")

    async def request(self, key: str) -> bool | None:
        await self._provider.get()
        op = self._provider.operation(request_operation(key))
        if op is None:
            return None
        try:
            result = await asyncio.wait_for(asyncio.to_thread(op), timeout=self._timeout)
        except Exception as e:
            _logger.error("Error requesting %s permission: %s", key, e)
            return False
        return result is True
