# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Nintendont memory-server backend.

Nintendont (homebrew GameCube loader for the Wii) exposes a small binary
protocol on TCP port 43673. Each round trip costs hundreds of milliseconds
on real hardware, so every batch is packed into as few packets as the
server's advertised limits allow.
"""

from __future__ import annotations

import asyncio
import struct
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from uatbridge.constants import DEFAULT_CONNECT_TIMEOUT_S, DEFAULT_READ_TIMEOUT_S, NINTENDONT_PORT
from uatbridge.errors import ConnectionLost, ProtocolMismatch, Unreachable
from uatbridge.memory.base import MemoryBackend, ReadRequest
from uatbridge.memory.codec import TypeSpecifier

if TYPE_CHECKING:
    from asyncio import StreamReader, StreamWriter

log = structlog.get_logger()

# Memory operation types
OP_READ_COMMANDS = 0
OP_REQUEST_VERSION = 1

# Per-operation flag byte
OP_HAS_READ = 0x80
OP_HAS_WRITE = 0x40
OP_IS_WORD = 0x20
OP_HAS_OFFSET = 0x10
OP_ADDRESS_INDEX_MASK = 0x0F

HEADER_SIZE = 4
ADDRESS_SIZE = 4
VERSION_REPLY = struct.Struct(">IIII")
_ONE_BYTE = TypeSpecifier.raw(1)

# The address index is a nibble, so one packet can name at most 16 addresses
MAX_ADDRESSES_PER_PACKET = OP_ADDRESS_INDEX_MASK + 1


@dataclass(frozen=True)
class ServerInfo:
    """Limits advertised by the memory server during the handshake."""

    protocol_version: int
    max_input_bytes: int
    max_output_bytes: int
    max_addresses: int

    @property
    def addresses_per_packet(self) -> int:
        return min(self.max_addresses, MAX_ADDRESSES_PER_PACKET)


def encode_header(operation: int, count: int, address_count: int, keep_alive: bool = True) -> bytes:
    return bytes([operation, count, address_count, int(keep_alive)])


def encode_op(index: int, size: int, offset: int | None) -> bytes:
    """Encode one read operation against address slot ``index``."""
    if index & ~OP_ADDRESS_INDEX_MASK:
        raise ValueError(f"invalid address index: {index}")
    flags = OP_HAS_READ | index
    if offset is None:
        return bytes([flags, size])
    return bytes([flags | OP_HAS_OFFSET, size]) + struct.pack(">h", offset)


def encode_read_packet(requests: Sequence[ReadRequest]) -> bytes:
    """Build a read-commands packet, one address slot per request."""
    count = len(requests)
    data = bytearray(encode_header(OP_READ_COMMANDS, count, count))
    for request in requests:
        data += struct.pack(">I", request.address & 0xFFFFFFFF)
    for index, request in enumerate(requests):
        data += encode_op(index, request.size, request.offset)
    return bytes(data)


def mask_size(count: int) -> int:
    return (count - 1) // 8 + 1


def packet_sizes(requests: Sequence[ReadRequest]) -> tuple[int, int]:
    """Return (request bytes, worst-case reply bytes) for one packet."""
    input_bytes = HEADER_SIZE + sum(ADDRESS_SIZE + (2 if r.offset is None else 4) for r in requests)
    output_bytes = mask_size(len(requests)) + sum(r.size for r in requests)
    return input_bytes, output_bytes


def split_batch(requests: Sequence[ReadRequest], info: ServerInfo) -> list[list[ReadRequest]]:
    """Greedily pack requests into packets that respect the server limits."""
    packets: list[list[ReadRequest]] = []
    current: list[ReadRequest] = []
    for request in requests:
        candidate = [*current, request]
        input_bytes, output_bytes = packet_sizes(candidate)
        fits = (
            len(candidate) <= info.addresses_per_packet
            and input_bytes <= info.max_input_bytes
            and output_bytes <= info.max_output_bytes
        )
        if fits or not current:
            current = candidate
        else:
            packets.append(current)
            current = [request]
    if current:
        packets.append(current)
    return packets


class NintendontBackend(MemoryBackend):
    """Reads memory from a console running Nintendont."""

    name = "nintendont"

    def __init__(
        self,
        host: str,
        port: int = NINTENDONT_PORT,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
    ) -> None:
        self.host = host
        self.port = port
        self._connect_timeout_s = connect_timeout_s
        self._read_timeout_s = read_timeout_s
        self._reader: StreamReader | None = None
        self._writer: StreamWriter | None = None
        self.info: ServerInfo | None = None

    async def connect(self, **kwargs: Any) -> None:
        """Open the socket and request the server's protocol limits.

        Raises:
            Unreachable: If the console cannot be reached
            ProtocolMismatch: If the version handshake fails
        """
        if self._writer:
            await self.disconnect()

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self._connect_timeout_s
            )
        except (OSError, TimeoutError) as e:
            raise Unreachable(f"Failed to connect to {self.host}:{self.port}") from e

        try:
            reply = await self._exchange(encode_header(OP_REQUEST_VERSION, 0, 0), VERSION_REPLY.size)
        except ConnectionLost as e:
            await self.disconnect()
            raise ProtocolMismatch(f"{self.host}:{self.port} did not answer the version request") from e

        info = ServerInfo(*VERSION_REPLY.unpack(reply))
        smallest_input, smallest_output = packet_sizes([ReadRequest(0, _ONE_BYTE, 0)])
        if (
            info.max_addresses < 1
            or info.max_input_bytes < smallest_input
            or info.max_output_bytes < smallest_output
        ):
            await self.disconnect()
            raise ProtocolMismatch(f"unusable server limits: {info}")
        self.info = info

        log.info(
            "nintendont_connected",
            host=self.host,
            port=self.port,
            protocol_version=info.protocol_version,
            max_input_bytes=info.max_input_bytes,
            max_output_bytes=info.max_output_bytes,
            max_addresses=info.max_addresses,
        )

    async def disconnect(self) -> None:
        """Close connection and cleanup resources."""
        if not self._writer:
            return

        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError, RuntimeError) as e:
            log.debug("nintendont_close_failed", host=self.host, error=str(e))
        finally:
            self._writer = None
            self._reader = None
            self.info = None

        log.info("nintendont_disconnected", host=self.host)

    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing() and self.info is not None

    def describe(self) -> dict[str, Any]:
        details = super().describe()
        details.update(host=self.host, port=self.port)
        if self.info is not None:
            details.update(
                protocol_version=self.info.protocol_version,
                max_input_bytes=self.info.max_input_bytes,
                max_output_bytes=self.info.max_output_bytes,
                max_addresses=self.info.max_addresses,
            )
        return details

    async def _read(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        if not self.is_connected() or self.info is None:
            raise ConnectionLost("Not connected")

        results: list[bytes | None] = []
        for packet in split_batch(requests, self.info):
            input_bytes, output_bytes = packet_sizes(packet)
            if input_bytes > self.info.max_input_bytes or output_bytes > self.info.max_output_bytes:
                # A single read that can never fit the server's buffers.
                log.warning("nintendont_read_too_large", address=hex(packet[0].address), size=packet[0].size)
                results.append(None)
                continue
            results.extend(await self._read_packet(packet))
        return results

    async def _read_packet(self, packet: Sequence[ReadRequest]) -> list[bytes | None]:
        mask_len = mask_size(len(packet))
        success = await self._exchange(encode_read_packet(packet), mask_len)

        present = [bool(success[i // 8] & (1 << (i % 8))) for i in range(len(packet))]
        expected = sum(r.size for r, ok in zip(packet, present, strict=True) if ok)
        payload = await self._receive(expected) if expected else b""

        results: list[bytes | None] = []
        pos = 0
        for request, ok in zip(packet, present, strict=True):
            if not ok:
                results.append(None)
                continue
            results.append(payload[pos : pos + request.size])
            pos += request.size
        return results

    async def _exchange(self, data: bytes, reply_size: int) -> bytes:
        if not self._writer:
            raise ConnectionLost("Not connected")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            await self.disconnect()
            raise ConnectionLost("Send failed") from e
        return await self._receive(reply_size)

    async def _receive(self, size: int) -> bytes:
        if not self._reader:
            raise ConnectionLost("Not connected")
        try:
            return await asyncio.wait_for(self._reader.readexactly(size), timeout=self._read_timeout_s)
        except asyncio.IncompleteReadError as e:
            await self.disconnect()
            raise ConnectionLost(f"Short reply: expected {size} bytes, got {len(e.partial)}") from e
        except TimeoutError as e:
            await self.disconnect()
            raise ConnectionLost(f"No reply within {self._read_timeout_s}s") from e
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            await self.disconnect()
            raise ConnectionLost("Connection lost") from e
