# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Tracked variables and the diff against the last published snapshot."""

from __future__ import annotations

import json
import threading
from typing import Any

JsonValue = Any


class CycleWrites:
    """Variables written by one watcher invocation. Last write wins."""

    def __init__(self) -> None:
        self._values: dict[str, JsonValue] = {}

    def write(self, name: str, value: JsonValue) -> None:
        self._values[name] = value

    def snapshot(self) -> dict[str, JsonValue]:
        return dict(self._values)

    def __len__(self) -> int:
        return len(self._values)


def _canonical(value: JsonValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def same_value(a: JsonValue, b: JsonValue) -> bool:
    """JSON-exact equality: ``1``, ``1.0`` and ``true`` are all different."""
    return _canonical(a) == _canonical(b)


def compute_diff(old: dict[str, JsonValue], new: dict[str, JsonValue]) -> dict[str, JsonValue]:
    """Entries of ``new`` that differ from ``old``, plus ``None`` for removed keys."""
    diff: dict[str, JsonValue] = {}
    for name, value in new.items():
        if name not in old or not same_value(old[name], value):
            diff[name] = value
    for name in old:
        if name not in new:
            diff[name] = None
    return diff


class VariableStore:
    """Last published snapshot, shared between the poller and the server.

    The lock is held only while copying or comparing, never across I/O.
    """

    def __init__(self) -> None:
        self._published: dict[str, JsonValue] = {}
        self._lock = threading.Lock()

    def publish(self, snapshot: dict[str, JsonValue]) -> dict[str, JsonValue]:
        """Replace the published snapshot and return what changed."""
        new = dict(snapshot)
        with self._lock:
            diff = compute_diff(self._published, new)
            self._published = new
        return diff

    def clear(self) -> dict[str, JsonValue]:
        """Retract every published variable."""
        return self.publish({})

    def snapshot(self) -> dict[str, JsonValue]:
        with self._lock:
            return dict(self._published)

    def __len__(self) -> int:
        with self._lock:
            return len(self._published)
