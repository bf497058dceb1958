# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Game interface registry and per-cycle selection.

Every cycle each registered interface is verified against the running game.
The first-registered interface that verifies is active; only its watcher
contributes variables. An active interface that stops verifying is dropped
for one cycle before another is picked.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from uatbridge.errors import ScriptError
from uatbridge.logging import get_logger
from uatbridge.scripting.interface import GameInterface

logger = get_logger(__name__)


class CandidateState(str, Enum):
    """Verification outcome for one interface in the current cycle."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    REJECTED = "rejected"


class InterfaceRegistry:
    """Interfaces registered by every loaded script, in registration order."""

    def __init__(self) -> None:
        self._interfaces: list[GameInterface] = []
        self._counter = itertools.count()

    def register(self, interface: GameInterface) -> None:
        """Add an interface, replacing one the same runtime registered under the same key."""
        for index, existing in enumerate(self._interfaces):
            if existing.runtime is interface.runtime and existing.key == interface.key:
                interface.order = existing.order
                self._interfaces[index] = interface
                logger.info("interface_replaced", interface=interface.label)
                return
        interface.order = next(self._counter)
        self._interfaces.append(interface)
        logger.info("interface_registered", interface=interface.label, order=interface.order)

    def __iter__(self) -> Iterator[GameInterface]:
        return iter(list(self._interfaces))

    def __len__(self) -> int:
        return len(self._interfaces)


@dataclass
class SelectionResult:
    """Outcome of one verification pass."""

    active: GameInterface | None
    changed: bool
    run_watcher: bool


class Selector:
    """Tracks candidate states and the active interface across cycles."""

    def __init__(self, registry: InterfaceRegistry) -> None:
        self._registry = registry
        self._states: dict[int, CandidateState] = {}
        self._active: GameInterface | None = None

    @property
    def active(self) -> GameInterface | None:
        return self._active

    def state(self, interface: GameInterface) -> CandidateState:
        return self._states.get(id(interface), CandidateState.UNVERIFIED)

    def verify_all(self) -> SelectionResult:
        """Verify every interface and settle this cycle's active interface.

        Must run on the script thread. ``ConnectionLost`` from a read
        propagates; any other script failure only rejects that interface.
        """
        self._states = {id(interface): self._verify_one(interface) for interface in self._registry}

        previous = self._active
        if previous is not None and self.state(previous) is not CandidateState.VERIFIED:
            logger.info("interface_lost", interface=previous.label, state=self.state(previous).value)
            self._active = None
            return SelectionResult(None, changed=True, run_watcher=False)

        chosen = next((i for i in self._registry if self.state(i) is CandidateState.VERIFIED), None)
        if chosen is None:
            return SelectionResult(None, changed=False, run_watcher=False)
        if chosen is previous:
            return SelectionResult(chosen, changed=False, run_watcher=True)

        self._active = chosen
        logger.info(
            "interface_selected",
            interface=chosen.label,
            name=chosen.display_name,
            replaced=previous.label if previous is not None else None,
        )
        return SelectionResult(chosen, changed=True, run_watcher=True)

    def reject(self, interface: GameInterface) -> None:
        """Mark an interface rejected for this cycle and drop it if active."""
        self._states[id(interface)] = CandidateState.REJECTED
        if self._active is interface:
            self._active = None

    def reset(self) -> None:
        """Forget all states and the active interface."""
        self._states.clear()
        self._active = None

    def _verify_one(self, interface: GameInterface) -> CandidateState:
        try:
            matched = interface.runtime.verify(interface)
        except ScriptError as e:
            logger.warning("verify_failed", interface=interface.label, error=str(e.cause))
            return CandidateState.REJECTED
        return CandidateState.VERIFIED if matched else CandidateState.UNVERIFIED
