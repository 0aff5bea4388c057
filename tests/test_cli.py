"""Tests for the vigil command line."""

import orjson
import pytest
from typer.testing import CliRunner

from vigil import __version__
from vigil.cli import main as cli_main
from vigil.cli.context import VigilContext
from vigil.config import VigilSettings
from vigil.permissions.definitions import default_permissions
from vigil.permissions.gate import PermissionGate
from vigil.supervisor.supervisor import Supervisor

from conftest import FakeProber, FakeSpawner

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch):
    monkeypatch.setattr(cli_main, "configure_logging", lambda *a, **k: None)
    VigilContext.reset()
    yield
    VigilContext.reset()


def test_version():
    result = runner.invoke(cli_main.app, ["version"])
    assert result.exit_code == 0
    assert f"vigil v{__version__}" in result.output


def test_workers_lists_every_concern():
    result = runner.invoke(cli_main.app, ["workers"])
    assert result.exit_code == 0
    assert "process-watch" in result.output
    assert "notification-blocker" in result.output


def test_request_unknown_permission():
    result = runner.invoke(cli_main.app, ["request", "camera"])
    assert result.exit_code == 2
    assert "Unknown permission" in result.output


def test_run_rejects_unknown_worker():
    result = runner.invoke(cli_main.app, ["run", "--worker", "keylogger"])
    assert result.exit_code == 2
    assert "keylogger" in result.output


def test_run_with_closed_gate_exits_1(tmp_path):
    run_settings = VigilSettings(
        workers=["vm-detect"],
        permission_wait_retries=1,
        permission_retry_delay=0,
    )
    ctx = VigilContext(run_settings)
    spawner = FakeSpawner()
    ctx.gate = PermissionGate(
        FakeProber({"screenRecording": False}),
        permissions=default_permissions("darwin"),
        bus=ctx.event_bus,
        settings=run_settings,
        settings_opener=lambda permission: None,
    )
    ctx.supervisor = Supervisor(ctx.gate, bus=ctx.event_bus, settings=run_settings, spawner=spawner)
    VigilContext._instance = ctx
    export = tmp_path / "session.json"

    result = runner.invoke(cli_main.app, ["run", "--export", str(export)])

    assert result.exit_code == 1
    assert "Cannot start" in result.output
    assert spawner.processes == []
    assert orjson.loads(export.read_bytes())["session"]["total_violations"] == 0
