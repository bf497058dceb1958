# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Bridge GameCube memory to UAT tracker clients."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
