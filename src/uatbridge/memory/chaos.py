# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Fault-injection backend wrapper (deterministic).

This is used for resilience testing. It wraps a real backend and injects
dropped connections and latency at deterministic intervals so tests are
repeatable.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence
from typing import Any

from uatbridge.errors import ConnectionLost
from uatbridge.memory.base import MemoryBackend, ReadRequest


class ChaosBackend(MemoryBackend):
    name = "chaos"

    def __init__(
        self,
        inner: MemoryBackend,
        *,
        seed: int = 1,
        disconnect_every_n_batches: int = 0,
        max_jitter_ms: int = 0,
        label: str = "chaos",
    ) -> None:
        self._inner = inner
        self._rng = random.Random(int(seed))
        self._disconnect_n = int(disconnect_every_n_batches or 0)
        self._max_jitter_ms = int(max_jitter_ms or 0)
        self._label = str(label or "chaos")
        self._batch_count = 0

    async def connect(self, **kwargs: Any) -> None:
        await self._inner.connect(**kwargs)

    async def disconnect(self) -> None:
        await self._inner.disconnect()

    def is_connected(self) -> bool:
        return self._inner.is_connected()

    def describe(self) -> dict[str, Any]:
        details = self._inner.describe()
        details["chaos"] = self._label
        return details

    async def _read(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        self._batch_count += 1

        if self._max_jitter_ms > 0:
            await asyncio.sleep(self._rng.uniform(0.0, float(self._max_jitter_ms)) / 1000.0)

        if self._disconnect_n > 0 and (self._batch_count % self._disconnect_n) == 0:
            await self._inner.disconnect()
            raise ConnectionLost(f"{self._label}: injected disconnect on batch #{self._batch_count}")

        return await self._inner.read_batch(requests)
