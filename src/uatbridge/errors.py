# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Exception hierarchy for the bridge.

Failures are scoped to the smallest unit that can absorb them: one read
(``MalformedRead``), one script (``ScriptError``), one client
(``ClientOverloaded``). Only backend selection at startup and reconnect
exhaustion are fatal.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for bridge operations."""


class ConnectError(BridgeError):
    """Backend could not be connected."""


class Unreachable(ConnectError):
    """Target host or process could not be found."""


class ProtocolMismatch(ConnectError):
    """Target responded, but not with the expected handshake or layout."""


class MalformedRead(BridgeError):
    """Read returned fewer bytes than the requested type needs."""


class ConnectionLost(BridgeError):
    """Backend dropped mid-batch; unusable until reconnected."""


class ReconnectExhausted(BridgeError):
    """Backend could not be reconnected within the retry ceiling."""


class ScriptLoadError(BridgeError):
    """Script file could not be read or failed while executing its top level."""


class HostCallError(BridgeError):
    """A script passed invalid arguments to a host primitive."""


class ScriptError(BridgeError):
    """A script callback raised an error."""

    def __init__(self, interface_name: str, cause: BaseException | str) -> None:
        self.interface_name = interface_name
        self.cause = cause
        super().__init__(f"{interface_name}: {cause}")


class ScriptTimeout(ScriptError):
    """A script callback exceeded its instruction budget."""


class ClientOverloaded(BridgeError):
    """A tracker client's outbound queue overflowed."""
