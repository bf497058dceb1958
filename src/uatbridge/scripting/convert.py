# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Conversion of Lua values into JSON-compatible Python values.

Lua strings are byte strings; the runtime hands them over as Latin-1 text so
every byte survives, and they are re-read here as UTF-8 where possible.
"""

from __future__ import annotations

from typing import Any

import lupa

from uatbridge.errors import HostCallError

JsonValue = Any


def lua_string(value: str | bytes) -> str:
    """Text of a Lua string: UTF-8 when it decodes, otherwise Latin-1."""
    raw = value.encode("latin-1") if isinstance(value, str) else value
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def lua_key(value: Any) -> str:
    """Coerce a Lua value to a string the way ``tostring`` would for keys."""
    if isinstance(value, (str, bytes)):
        return lua_string(value)
    if isinstance(value, bool) or value is None:
        raise HostCallError(f"cannot use {value!r} as a name")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    raise HostCallError(f"cannot use a {lupa.lua_type(value) or type(value).__name__} as a name")


def _array_range(keys: list[Any]) -> range | None:
    if not all(isinstance(k, int) and not isinstance(k, bool) for k in keys):
        return None
    ordered = sorted(keys)
    start = ordered[0]
    if start not in (0, 1):
        return None
    if ordered != list(range(start, start + len(ordered))):
        return None
    return range(start, start + len(ordered))


def lua_to_json(value: Any) -> JsonValue:
    """Convert a Lua value to JSON.

    Tables with consecutive integer keys starting at 0 or 1 become arrays,
    other tables become objects with stringified keys, and the empty table
    becomes an empty array.

    Raises:
        HostCallError: If the value (or anything inside it) has no JSON form
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (str, bytes)):
        return lua_string(value)

    kind = lupa.lua_type(value)
    if kind != "table":
        raise HostCallError(f"a {kind or type(value).__name__} cannot be represented in JSON")

    items = list(value.items())
    if not items:
        return []
    indices = _array_range([k for k, _ in items])
    if indices is not None:
        return [lua_to_json(value[i]) for i in indices]
    return {lua_key(k): lua_to_json(v) for k, v in items}


def string_list(value: Any) -> list[str] | None:
    """Read an optional Lua array of strings, e.g. ``Features``."""
    if value is None:
        return None
    converted = lua_to_json(value)
    if not isinstance(converted, list):
        raise HostCallError("expected an array of strings")
    return [str(item) for item in converted]
