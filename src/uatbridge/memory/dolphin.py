# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Dolphin emulator backend.

Attaches to a locally running Dolphin through ``dolphin_memory_engine`` and
reads emulated RAM by console address. Reads are cheap, so batching here is
a convenience only.
"""

from __future__ import annotations

import asyncio
import struct
from collections.abc import Sequence
from typing import Any

import dolphin_memory_engine as dme
import structlog

from uatbridge.constants import GCN_BASE_ADDRESS, GCN_MEM1_SIZE
from uatbridge.errors import ConnectionLost, Unreachable
from uatbridge.memory.base import POINTER_SIZE, MemoryBackend, ReadRequest

log = structlog.get_logger()

# Cached (0x8...) and uncached (0xC...) mirrors of MEM1
_MIRROR_SEGMENTS = (0b10, 0b11)
_PHYSICAL_MASK = 0x3FFFFFFF


def to_console_address(address: int, size: int) -> int | None:
    """Map a GameCube address onto the cached MEM1 mirror.

    Returns None when the range falls outside MEM1.
    """
    if (address >> 30) not in _MIRROR_SEGMENTS:
        return None
    physical = address & _PHYSICAL_MASK
    if physical + size > GCN_MEM1_SIZE:
        return None
    return GCN_BASE_ADDRESS | physical


class DolphinBackend(MemoryBackend):
    """Reads memory from a locally running Dolphin emulator."""

    name = "dolphin"

    def __init__(self, engine: Any = dme) -> None:
        self._engine = engine
        self._hooked = False

    async def connect(self, **kwargs: Any) -> None:
        """Hook into the running emulator.

        Raises:
            Unreachable: If Dolphin is not running or has no game booted
        """
        await self.disconnect()
        try:
            await asyncio.to_thread(self._engine.hook)
        except RuntimeError as e:
            raise Unreachable(f"Cannot hook Dolphin: {e}") from e
        if not self._engine.is_hooked():
            raise Unreachable("Cannot hook Dolphin; is it running with a game booted?")
        self._hooked = True
        log.info("dolphin_connected")

    async def disconnect(self) -> None:
        if not self._hooked:
            return
        self._hooked = False
        self._engine.un_hook()
        log.info("dolphin_disconnected")

    def is_connected(self) -> bool:
        return self._hooked and self._engine.is_hooked()

    async def _read(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        if not self.is_connected():
            raise ConnectionLost("Not connected")
        try:
            return [self._read_one(request) for request in requests]
        except ConnectionLost:
            await self.disconnect()
            raise

    def _read_one(self, request: ReadRequest) -> bytes | None:
        address = request.address
        if request.offset is not None:
            pointer = self._read_range(address, POINTER_SIZE)
            if pointer is None:
                return None
            address = struct.unpack(">I", pointer)[0] + request.offset
        return self._read_range(address, request.size)

    def _read_range(self, address: int, size: int) -> bytes | None:
        console = to_console_address(address, size)
        if console is None:
            return None
        try:
            data = self._engine.read_bytes(console, size)
        except RuntimeError as e:
            raise ConnectionLost(f"Dolphin memory read failed at {console:#010x}: {e}") from e
        if len(data) != size:
            raise ConnectionLost(f"Dolphin returned {len(data)} of {size} bytes at {console:#010x}")
        return bytes(data)
