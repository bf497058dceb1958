# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Shared constants for uatbridge."""

from __future__ import annotations

# GameCube main RAM (MEM1)
GCN_BASE_ADDRESS = 0x80000000
GCN_MEM1_SIZE = 0x01800000

# Nintendont memory server
NINTENDONT_PORT = 43673

# UAT protocol
UAT_PORT_MAIN = 65399
UAT_PORT_BACKUP = 44444
UAT_PROTOCOL_VERSION = 0

# Polling cadence
DEFAULT_POLL_INTERVAL_S = 0.5
DEFAULT_CONNECT_RETRY_INTERVAL_S = 5.0

# Default timeouts
DEFAULT_CONNECT_TIMEOUT_S = 5.0
DEFAULT_READ_TIMEOUT_S = 5.0

# Script limits
DEFAULT_SCRIPT_STEP_BUDGET = 1_000_000

# Per-client outbound queue depth
DEFAULT_CLIENT_QUEUE_SIZE = 256
