"""Tests for the worker/supervisor line protocol."""

import orjson
import pytest

from vigil import protocol
from vigil.exceptions import ProtocolError
from vigil.protocol import Command, Heartbeat, WorkerEvent


def test_encode_is_one_line():
    line = protocol.encode(protocol.event("vm-detect", {"note": "a\nb"}))
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1


def test_decode_each_kind():
    hb = protocol.decode(b'{"kind":"heartbeat","worker":"bt-watch","pid":12,"timestamp":1.5}')
    assert isinstance(hb, Heartbeat)
    assert hb.pid == 12

    ev = protocol.decode('{"kind":"event","worker":"vm-detect","payload":{"isInsideVM":true}}')
    assert isinstance(ev, WorkerEvent)
    assert ev.payload == {"isInsideVM": True}

    cmd = protocol.decode(b'{"kind":"command","cmd":"setPrivacyMode","args":{"mode":"REDACTED"}}\n')
    assert isinstance(cmd, Command)
    assert cmd.args["mode"] == "REDACTED"


def test_heartbeat_helper_carries_pid():
    import os

    hb = protocol.decode(protocol.encode(protocol.heartbeat("device-watch")))
    assert hb.worker == "device-watch"
    assert hb.pid == os.getpid()


def test_command_helper():
    cmd = protocol.command("stop")
    assert cmd.cmd == protocol.CMD_STOP
    assert cmd.args == {}
    assert orjson.loads(protocol.encode(cmd)) == {"kind": "command", "cmd": "stop", "args": {}}


@pytest.mark.parametrize("line", [
    b"",
    b"   \n",
    b"not json",
    b"[1, 2, 3]",
    b'{"kind":"telemetry","worker":"x"}',
    b'{"kind":"heartbeat","worker":"x"}',
    b'{"worker":"x","payload":{}}',
])
def test_decode_rejects_everything_else(line):
    with pytest.raises(ProtocolError):
        protocol.decode(line)
