# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Typed decoding of big-endian GameCube memory."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any

from uatbridge.errors import HostCallError, MalformedRead
from uatbridge.logging import get_logger

logger = get_logger(__name__)

# Remote size field is a single byte
MAX_RAW_SIZE = 255

ReadResult = int | float | str | bytes | None


class Kind(str, Enum):
    U8 = "u8"
    S8 = "s8"
    U16 = "u16"
    S16 = "s16"
    U32 = "u32"
    S32 = "s32"
    S64 = "s64"
    F32 = "f32"
    F64 = "f64"
    STRING = "string"
    BYTES = "bytes"


_FORMATS: dict[Kind, str] = {
    Kind.U8: ">B",
    Kind.S8: ">b",
    Kind.U16: ">H",
    Kind.S16: ">h",
    Kind.U32: ">I",
    Kind.S32: ">i",
    Kind.S64: ">q",
    Kind.F32: ">f",
    Kind.F64: ">d",
}

_ALIASES: dict[str, Kind] = {
    "i8": Kind.S8,
    "i16": Kind.S16,
    "i32": Kind.S32,
    "i64": Kind.S64,
}


@dataclass(frozen=True)
class TypeSpecifier:
    """How many bytes to read and how to interpret them."""

    kind: Kind
    count: int = 0

    @property
    def size(self) -> int:
        fmt = _FORMATS.get(self.kind)
        if fmt is not None:
            return struct.calcsize(fmt)
        return max(self.count, 0)

    @property
    def yields_value(self) -> bool:
        """Raw byte and string reads with a nonpositive count produce nothing."""
        return self.kind in _FORMATS or self.count > 0

    @classmethod
    def raw(cls, count: int) -> TypeSpecifier:
        return cls(Kind.BYTES, count)

    @classmethod
    def parse(cls, value: Any) -> TypeSpecifier:
        """Build a specifier from a script-supplied tag.

        Accepts a numeric tag name (``"u32"``, ``"i16"``...), an integer byte
        count, or ``"bytes:N"`` / ``"string:N"``.

        Raises:
            HostCallError: If the tag is not recognised
        """
        if isinstance(value, bool):
            raise HostCallError(f"invalid type specifier: {value!r}")
        if isinstance(value, int):
            return cls._checked(Kind.BYTES, value)
        if isinstance(value, float) and value.is_integer():
            return cls._checked(Kind.BYTES, int(value))
        if isinstance(value, bytes):
            value = value.decode("ascii", errors="replace")
        if not isinstance(value, str):
            raise HostCallError(f"invalid type specifier: {value!r}")

        tag = value.strip().lower()
        if tag in _ALIASES:
            return cls(_ALIASES[tag])
        name, sep, count = tag.partition(":")
        try:
            kind = Kind(name)
        except ValueError as e:
            raise HostCallError(f"invalid type specifier: {value!r}") from e
        if kind in _FORMATS:
            if sep:
                raise HostCallError(f"numeric type takes no size: {value!r}")
            return cls(kind)
        if not sep:
            raise HostCallError(f"{kind.value} type needs a size, e.g. '{kind.value}:16'")
        try:
            return cls._checked(kind, int(count))
        except ValueError as e:
            raise HostCallError(f"invalid size in type specifier: {value!r}") from e

    @classmethod
    def _checked(cls, kind: Kind, count: int) -> TypeSpecifier:
        if count > MAX_RAW_SIZE:
            raise HostCallError(f"read size {count} exceeds {MAX_RAW_SIZE} bytes")
        return cls(kind, count)


def unpack(data: bytes, spec: TypeSpecifier) -> int | float | str | bytes:
    """Decode ``data`` as ``spec``.

    Raises:
        MalformedRead: If ``data`` is shorter than the type needs
    """
    size = spec.size
    if len(data) < size:
        raise MalformedRead(f"{spec.kind.value} needs {size} bytes, got {len(data)}")
    chunk = bytes(data[:size])

    fmt = _FORMATS.get(spec.kind)
    if fmt is not None:
        return struct.unpack(fmt, chunk)[0]
    if spec.kind is Kind.STRING:
        return chunk.decode("latin-1")
    return chunk


def decode(data: bytes | None, spec: TypeSpecifier) -> ReadResult:
    """Decode a read result, downgrading failures to Absent (``None``)."""
    if data is None or not spec.yields_value:
        return None
    try:
        return unpack(data, spec)
    except MalformedRead as e:
        logger.debug("malformed_read", kind=spec.kind.value, error=str(e))
        return None
