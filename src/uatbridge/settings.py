# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Application settings."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from uatbridge.constants import (
    DEFAULT_CLIENT_QUEUE_SIZE,
    DEFAULT_CONNECT_RETRY_INTERVAL_S,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_READ_TIMEOUT_S,
    DEFAULT_SCRIPT_STEP_BUDGET,
    NINTENDONT_PORT,
    UAT_PORT_BACKUP,
    UAT_PORT_MAIN,
)


class UATConfig(BaseModel):
    """Tracker-facing WebSocket server."""

    host: str = "127.0.0.1"
    ports: list[int] = Field(default_factory=lambda: [UAT_PORT_MAIN, UAT_PORT_BACKUP])
    client_queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE


class NintendontConfig(BaseModel):
    """Remote memory server on real hardware."""

    port: int = NINTENDONT_PORT
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    read_timeout_s: float = DEFAULT_READ_TIMEOUT_S


class Settings(BaseSettings):
    log_level: str = "WARNING"
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    connect_retry_interval_s: float = DEFAULT_CONNECT_RETRY_INTERVAL_S
    reconnect_max_retries: int = 5
    reconnect_initial_delay_s: float = 1.0
    reconnect_backoff_multiplier: float = 2.0
    script_step_budget: int = DEFAULT_SCRIPT_STEP_BUDGET
    script_max_memory: int | None = None
    keepalive_empty_diffs: bool = False
    uat: UATConfig = Field(default_factory=UATConfig)
    nintendont: NintendontConfig = Field(default_factory=NintendontConfig)

    model_config = SettingsConfigDict(
        env_prefix="UATBRIDGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )
