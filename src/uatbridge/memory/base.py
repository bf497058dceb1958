# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Abstract base class for memory backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from uatbridge.memory.codec import TypeSpecifier

POINTER_SIZE = 4


@dataclass(frozen=True)
class ReadRequest:
    """One logical read.

    With ``offset`` set, the backend first reads a pointer at ``address`` and
    then reads the value at ``pointer + offset``.
    """

    address: int
    type: TypeSpecifier
    offset: int | None = None

    @property
    def size(self) -> int:
        return self.type.size


class MemoryBackend(ABC):
    """Abstract base for memory transports (Nintendont, Dolphin)."""

    name: str = "backend"

    @abstractmethod
    async def connect(self, **kwargs: Any) -> None:
        """Attach to the target.

        Raises:
            Unreachable: If the host or process cannot be found
            ProtocolMismatch: If the target does not look like a memory server
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the target.

        Should be idempotent - safe to call multiple times.
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the backend is usable."""

    @abstractmethod
    async def _read(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        """Read every request, which all have a positive size."""

    async def read_batch(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        """Read a batch, returning one entry per request in input order.

        Entries are ``None`` where an individual read failed.

        Raises:
            ConnectionLost: If the backend dropped while servicing the batch
        """
        results: list[bytes | None] = [None] * len(requests)
        wanted = [i for i, request in enumerate(requests) if request.size > 0]
        if not wanted:
            return results
        data = await self._read([requests[i] for i in wanted])
        for i, chunk in zip(wanted, data, strict=True):
            results[i] = chunk
        return results

    async def read_single(self, request: ReadRequest) -> bytes | None:
        """Read one value as a single-element batch."""
        (result,) = await self.read_batch([request])
        return result

    def describe(self) -> dict[str, Any]:
        """Connection details for diagnostics."""
        return {"backend": self.name, "connected": self.is_connected()}
