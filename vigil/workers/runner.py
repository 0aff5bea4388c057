"""Worker process entry point.

    python -m vigil.workers.runner <worker-key>

Settings arrive through VIGIL_* environment variables set by the
supervisor. stdout is reserved for protocol lines; anything printed by
provider code is redirected to stderr.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Callable

from vigil.config import VigilSettings
from vigil.exceptions import UnknownWorkerError
from vigil.logs import configure_logging
from vigil.provider.handle import ProviderHandle
from vigil.workers.channel import StdioChannel
from vigil.workers.concerns import get_concern
from vigil.workers.runtime import WorkerRuntime

_logger = logging.getLogger(__name__)


async def _pump_commands(runtime: WorkerRuntime, channel: StdioChannel) -> None:
    async for command in channel.commands():
        await runtime.handle_command(command)
    _logger.info("[%s] stdin closed, supervisor is gone", runtime.key)
    await runtime.stop()


def _install_stop_signals(runtime: WorkerRuntime) -> Callable[[], None]:
    """Route SIGTERM/SIGINT to a clean ``runtime.stop()``; returns an uninstaller."""
    loop = asyncio.get_running_loop()
    stopping: set[asyncio.Task] = set()

    def request_stop(name: str) -> None:
        _logger.info("[%s] %s received, stopping", runtime.key, name)
        task = loop.create_task(runtime.stop())
        stopping.add(task)
        task.add_done_callback(stopping.discard)

    installed: list[signal.Signals] = []
    previous: dict[signal.Signals, Any] = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, request_stop, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support (Windows): a plain handler that hops onto the loop
            try:
                previous[sig] = signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(
                        request_stop, signal.Signals(signum).name,
                    ),
                )
            except ValueError:
                _logger.debug("Cannot handle %s outside the main thread", sig.name)

    def uninstall() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return uninstall


async def serve(runtime: WorkerRuntime, channel: StdioChannel) -> None:
    """Run the runtime until a stop command, a stop signal or stdin EOF."""
    uninstall = _install_stop_signals(runtime)
    try:
        await runtime.start()
        pump = asyncio.create_task(_pump_commands(runtime, channel))
        try:
            await runtime.wait()
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
    finally:
        uninstall()


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    settings = VigilSettings()
    configure_logging(settings.log_level, settings.log_json)

    if len(args) != 1:
        _logger.error("usage: python -m vigil.workers.runner <worker-key>")
        return 2
    try:
        spec = get_concern(args[0])
    except UnknownWorkerError as e:
        _logger.error("%s", e)
        return 2

    protocol_out = sys.stdout.buffer
    sys.stdout = sys.stderr
    channel = StdioChannel(protocol_out, sys.stdin.buffer)
    runtime = WorkerRuntime(spec, ProviderHandle(settings.detection_provider), channel, settings)

    try:
        asyncio.run(serve(runtime, channel))
    except KeyboardInterrupt:
        pass
    except Exception:
        _logger.exception("[%s] Worker failed", spec.key)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
