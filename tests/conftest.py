# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from tests.fakes import FakeBackend, GameMemory
from uatbridge.selector import InterfaceRegistry
from uatbridge.settings import Settings, UATConfig
from uatbridge.variables import VariableStore


@pytest.fixture
def memory() -> GameMemory:
    return GameMemory()


@pytest.fixture
def fake_backend(memory: GameMemory) -> FakeBackend:
    return FakeBackend(memory)


@pytest.fixture
def registry() -> InterfaceRegistry:
    return InterfaceRegistry()


@pytest.fixture
def store() -> VariableStore:
    return VariableStore()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast timings and an ephemeral UAT port."""
    return Settings(
        poll_interval_s=0.01,
        connect_retry_interval_s=0.01,
        reconnect_max_retries=2,
        reconnect_initial_delay_s=0.01,
        reconnect_backoff_multiplier=1.0,
        script_step_budget=100_000,
        uat=UATConfig(ports=[0]),
    )
