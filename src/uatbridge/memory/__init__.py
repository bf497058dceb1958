# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Memory access layer for GameCube targets."""

from __future__ import annotations

from uatbridge.memory.base import MemoryBackend, ReadRequest
from uatbridge.memory.codec import TypeSpecifier, decode
from uatbridge.memory.dolphin import DolphinBackend
from uatbridge.memory.factory import create_backend
from uatbridge.memory.nintendont import NintendontBackend

__all__ = [
    "DolphinBackend",
    "MemoryBackend",
    "NintendontBackend",
    "ReadRequest",
    "TypeSpecifier",
    "create_backend",
    "decode",
]
