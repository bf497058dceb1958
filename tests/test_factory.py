from __future__ import annotations

import pytest

from uatbridge.memory.chaos import ChaosBackend
from uatbridge.memory.dolphin import DolphinBackend
from uatbridge.memory.factory import create_backend
from uatbridge.memory.nintendont import NintendontBackend
from uatbridge.settings import Settings


def test_dolphin_target_is_case_insensitive() -> None:
    assert isinstance(create_backend("Dolphin", Settings()), DolphinBackend)


def test_ip_target_selects_nintendont() -> None:
    backend = create_backend("192.168.1.50", Settings())
    assert isinstance(backend, NintendontBackend)
    assert backend.host == "192.168.1.50"
    assert backend.port == 43673


def test_unknown_target_is_rejected() -> None:
    with pytest.raises(ValueError):
        create_backend("gamecube.local", Settings())


def test_chaos_wrapper() -> None:
    backend = create_backend("10.0.0.2", Settings(), chaos={"disconnect_every_n_batches": 3})
    assert isinstance(backend, ChaosBackend)
