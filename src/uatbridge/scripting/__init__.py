# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Lua scripting layer: sandboxed runtimes and the interfaces they register."""

from __future__ import annotations

from uatbridge.scripting.interface import GameInterface
from uatbridge.scripting.runtime import ScriptRuntime

__all__ = ["GameInterface", "ScriptRuntime"]
