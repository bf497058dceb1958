# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""UAT protocol commands.

Every WebSocket text frame carries a JSON array of command objects, each
tagged with a ``cmd`` field.
"""

from __future__ import annotations

import json
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError

from uatbridge.constants import UAT_PROTOCOL_VERSION

# ErrorReply reasons
UNKNOWN_CMD = "unknown_cmd"
BAD_FRAME = "bad_frame"
ARGUMENT_TYPE = "argument_type"


class UATCommand(BaseModel):
    """Base for all commands; ``cmd`` is the wire tag."""

    cmd: ClassVar[str]
    # Fields left off the wire when unset
    omit_when_none: ClassVar[frozenset[str]] = frozenset()

    model_config = ConfigDict(extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"cmd": self.cmd}
        for key, value in self.model_dump().items():
            if value is None and key in self.omit_when_none:
                continue
            data[key] = value
        return data


class InfoCommand(UATCommand):
    """Identifies the active game interface."""

    cmd: ClassVar[str] = "Info"
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"features", "slots"})

    name: str | None = None
    version: str | None = None
    protocol: int = UAT_PROTOCOL_VERSION
    features: list[str] | None = None
    slots: list[str] | None = None


class VarCommand(UATCommand):
    """One variable value; ``None`` retracts it."""

    cmd: ClassVar[str] = "Var"
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"slot"})

    name: str
    value: Any = None
    slot: int | None = None


class ErrorReplyCommand(UATCommand):
    """Reply to a client command the server could not handle."""

    cmd: ClassVar[str] = "ErrorReply"
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"argument", "description"})

    name: str
    reason: str
    argument: str | None = None
    description: str | None = None


class SyncCommand(UATCommand):
    """Client request for the full variable set."""

    cmd: ClassVar[str] = "Sync"
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"slot"})

    slot: str | int | None = None


CLIENT_COMMANDS: dict[str, type[UATCommand]] = {SyncCommand.cmd: SyncCommand}


class BadFrame(ValueError):
    """A client frame is not a JSON array of command objects."""


def decode_frame(text: str) -> list[Any]:
    """Parse a client text frame into its command items.

    Raises:
        BadFrame: If the frame is not a JSON array
    """
    try:
        items = json.loads(text)
    except json.JSONDecodeError as e:
        raise BadFrame(f"invalid JSON: {e.msg}") from e
    if not isinstance(items, list):
        raise BadFrame("frame must be a JSON array of commands")
    return items


def parse_client_command(item: Any) -> UATCommand:
    """Parse one client command, or build the ErrorReply to send back."""
    if not isinstance(item, dict) or not isinstance(item.get("cmd"), str):
        return ErrorReplyCommand(name="", reason=BAD_FRAME, description="command must be an object with a 'cmd' string")
    name = item["cmd"]
    model = CLIENT_COMMANDS.get(name)
    if model is None:
        return ErrorReplyCommand(name=name, reason=UNKNOWN_CMD)
    try:
        return model.model_validate({k: v for k, v in item.items() if k != "cmd"})
    except ValidationError as e:
        error = e.errors()[0]
        argument = str(error["loc"][0]) if error["loc"] else None
        return ErrorReplyCommand(name=name, reason=ARGUMENT_TYPE, argument=argument, description=error["msg"])


def var_commands(values: dict[str, Any], slot: int | None = None) -> list[VarCommand]:
    return [VarCommand(name=name, value=value, slot=slot) for name, value in values.items()]


def encode_frame(commands: list[UATCommand]) -> str:
    """Serialize commands into one text frame."""
    return json.dumps([command.to_wire() for command in commands], separators=(",", ":"))
