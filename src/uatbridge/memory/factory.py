# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Backend selection from the target descriptor."""

from __future__ import annotations

import ipaddress
from typing import TYPE_CHECKING, Any

from uatbridge.memory.chaos import ChaosBackend
from uatbridge.memory.dolphin import DolphinBackend
from uatbridge.memory.nintendont import NintendontBackend

if TYPE_CHECKING:
    from uatbridge.memory.base import MemoryBackend
    from uatbridge.settings import Settings

DOLPHIN_TARGET = "dolphin"


def create_backend(target: str, settings: Settings, chaos: dict[str, Any] | None = None) -> MemoryBackend:
    """Pick the backend for ``target``.

    Args:
        target: ``"dolphin"`` for a local emulator, otherwise the console's IP address
        settings: Application settings
        chaos: Optional ChaosBackend options for fault injection

    Raises:
        ValueError: If the target is neither ``dolphin`` nor an IP address
    """
    backend: MemoryBackend
    if target.strip().lower() == DOLPHIN_TARGET:
        backend = DolphinBackend()
    else:
        try:
            address = ipaddress.ip_address(target.strip())
        except ValueError as e:
            raise ValueError(f"Target must be '{DOLPHIN_TARGET}' or an IP address, got {target!r}") from e
        backend = NintendontBackend(
            str(address),
            port=settings.nintendont.port,
            connect_timeout_s=settings.nintendont.connect_timeout_s,
            read_timeout_s=settings.nintendont.read_timeout_s,
        )
    if chaos:
        backend = ChaosBackend(backend, **dict(chaos))
    return backend
