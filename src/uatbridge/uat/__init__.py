# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""UAT tracker protocol: commands and the WebSocket server."""

from __future__ import annotations
