# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Game interface records registered by scripts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from uatbridge.uat.commands import InfoCommand

if TYPE_CHECKING:
    from uatbridge.scripting.runtime import ScriptRuntime


@dataclass(eq=False)
class GameInterface:
    """A game profile handed to the host by ``ScriptHost:AddGameInterface``.

    The record is owned by the runtime that created it; the registry only
    references it. ``verify`` and ``watcher`` are Lua functions, invoked
    through ``runtime`` so the instruction budget always applies.
    """

    key: str
    runtime: ScriptRuntime = field(repr=False)
    display_name: str | None = None
    version: str | None = None
    features: list[str] | None = None
    slots: list[str] | None = None
    verify: Any = field(default=None, repr=False)
    watcher: Any = field(default=None, repr=False)
    table: Any = field(default=None, repr=False)
    order: int = 0

    @property
    def script(self) -> str:
        return self.runtime.label

    @property
    def label(self) -> str:
        return f"{self.script}:{self.key}"

    def info(self) -> InfoCommand:
        return InfoCommand(
            name=self.display_name,
            version=self.version,
            features=self.features,
            slots=self.slots,
        )
