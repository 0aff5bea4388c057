"""Worker ⇄ Supervisor message protocol.

Three message kinds, one JSON document per line:

    {"kind": "heartbeat", "worker": "vm-detect", "pid": 4242, "timestamp": 1718000000.0}
    {"kind": "event", "worker": "vm-detect", "payload": {...}, "timestamp": 1718000000.0}
    {"kind": "command", "cmd": "stop", "args": {}}

Workers write heartbeats and events to stdout; the supervisor writes
commands to the worker's stdin. Anything else on the channel is rejected.
"""

from __future__ import annotations

import os
import time
from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from vigil.exceptions import ProtocolError

# Commands every worker understands; concerns add their own verbs
CMD_STOP = "stop"
CMD_PING = "ping"


class Heartbeat(BaseModel):
    kind: Literal["heartbeat"] = "heartbeat"
    worker: str
    pid: int
    timestamp: float = Field(default_factory=time.time)


class WorkerEvent(BaseModel):
    kind: Literal["event"] = "event"
    worker: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class Command(BaseModel):
    kind: Literal["command"] = "command"
    cmd: str
    args: dict[str, Any] = Field(default_factory=dict)


Message = Annotated[Union[Heartbeat, WorkerEvent, Command], Field(discriminator="kind")]

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def encode(message: Heartbeat | WorkerEvent | Command) -> bytes:
    """Serialize a message to a single newline-terminated line."""
    return orjson.dumps(message.model_dump(mode="json")) + b"\n"


def decode(line: bytes | str) -> Heartbeat | WorkerEvent | Command:
    """Parse one line into a message. Raises ProtocolError on anything else."""
    if isinstance(line, str):
        line = line.encode("utf-8")
    line = line.strip()
    if not line:
        raise ProtocolError("empty line")
    try:
        raw = orjson.loads(line)
    except orjson.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ProtocolError(f"expected an object, got {type(raw).__name__}")
    try:
        return _message_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"unknown message shape: {e.errors()[0]['msg']}") from e


def heartbeat(worker: str) -> Heartbeat:
    return Heartbeat(worker=worker, pid=os.getpid())


def event(worker: str, payload: dict[str, Any]) -> WorkerEvent:
    return WorkerEvent(worker=worker, payload=payload)


def command(cmd: str, **args: Any) -> Command:
    return Command(cmd=cmd, args=args)
