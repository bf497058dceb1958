# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""WebSocket server speaking the UAT tracker protocol.

All methods run on the event loop thread. Each client has a bounded outbound
queue drained by its own sender task, so one slow tracker can only ever get
itself dropped.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from uatbridge.constants import DEFAULT_CLIENT_QUEUE_SIZE, UAT_PORT_BACKUP, UAT_PORT_MAIN
from uatbridge.errors import ClientOverloaded
from uatbridge.logging import get_logger
from uatbridge.uat.commands import (
    BAD_FRAME,
    BadFrame,
    ErrorReplyCommand,
    InfoCommand,
    SyncCommand,
    UATCommand,
    decode_frame,
    encode_frame,
    parse_client_command,
    var_commands,
)

if TYPE_CHECKING:
    from uatbridge.variables import VariableStore

logger = get_logger(__name__)

# Close codes
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_TRY_AGAIN_LATER = 1013


class UATClient:
    """One connected tracker."""

    def __init__(self, ws: ServerConnection, queue_size: int) -> None:
        self.ws = ws
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.sender: asyncio.Task[None] | None = None

    @property
    def peer(self) -> str:
        return str(self.ws.remote_address)

    def enqueue(self, frame: str) -> None:
        """Queue a frame for sending.

        Raises:
            ClientOverloaded: If the client has fallen too far behind
        """
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise ClientOverloaded(f"{self.peer} has {self.queue.qsize()} frames pending") from e

    async def send_loop(self) -> None:
        try:
            while True:
                frame = await self.queue.get()
                await self.ws.send(frame)
        except ConnectionClosed as e:
            logger.debug("client_send_closed", peer=self.peer, code=e.rcvd.code if e.rcvd else None)


class UATServer:
    """Serves the active interface's variables to tracker clients."""

    def __init__(
        self,
        store: VariableStore,
        host: str = "127.0.0.1",
        ports: list[int] | None = None,
        client_queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE,
        keepalive_empty_diffs: bool = False,
    ) -> None:
        self._store = store
        self._host = host
        self._ports = list(ports) if ports is not None else [UAT_PORT_MAIN, UAT_PORT_BACKUP]
        self._client_queue_size = client_queue_size
        self._keepalive_empty_diffs = keepalive_empty_diffs
        self._servers: list[Server] = []
        self._clients: set[UATClient] = set()
        self._info: InfoCommand | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def ports(self) -> list[int]:
        """Ports actually bound (useful when configured with port 0)."""
        bound = []
        for server in self._servers:
            for sock in server.sockets:
                bound.append(sock.getsockname()[1])
        return bound

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def info(self) -> InfoCommand | None:
        return self._info

    async def start(self) -> None:
        """Listen on every configured port.

        Raises:
            OSError: If none of the ports could be bound
        """
        if self._servers:
            return
        last_error: OSError | None = None
        for port in self._ports:
            try:
                server = await serve(self._handle, self._host, port)
            except OSError as e:
                logger.warning("uat_port_unavailable", host=self._host, port=port, error=str(e))
                last_error = e
                continue
            self._servers.append(server)
        if not self._servers:
            assert last_error is not None
            raise last_error
        logger.info("uat_server_started", host=self._host, ports=self.ports)

    async def stop(self) -> None:
        for server in self._servers:
            server.close()
        for server in self._servers:
            await server.wait_closed()
        self._servers.clear()
        for client in list(self._clients):
            self._forget(client)
        for task in list(self._tasks):
            task.cancel()
        logger.info("uat_server_stopped")

    def set_info(self, info: InfoCommand | None) -> None:
        """Record the active interface and announce it to every client."""
        self._info = info
        if info is not None:
            self._broadcast(encode_frame([info]))

    def broadcast_diff(self, diff: dict[str, Any]) -> None:
        """Send one cycle's diff; the frame is serialized once for all clients."""
        if not diff:
            if self._keepalive_empty_diffs:
                self._broadcast(encode_frame([]))
            return
        self._broadcast(encode_frame(var_commands(diff)))

    def _broadcast(self, frame: str) -> None:
        for client in list(self._clients):
            try:
                client.enqueue(frame)
            except ClientOverloaded as e:
                self._drop(client, str(e))

    def _drop(self, client: UATClient, reason: str) -> None:
        logger.warning("client_dropped", peer=client.peer, reason=reason)
        self._forget(client)
        self._spawn(client.ws.close(CLOSE_TRY_AGAIN_LATER, "client overloaded"))

    def _forget(self, client: UATClient) -> None:
        self._clients.discard(client)
        if client.sender is not None:
            client.sender.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _full_state(self, slot: int | None = None) -> list[UATCommand]:
        return list(var_commands(self._store.snapshot(), slot=slot))

    async def _handle(self, ws: ServerConnection) -> None:
        client = UATClient(ws, self._client_queue_size)
        logger.info("client_connected", peer=client.peer)

        initial: list[UATCommand] = []
        if self._info is not None:
            initial.append(self._info)
        initial.extend(self._full_state())
        if initial:
            client.enqueue(encode_frame(initial))
        self._clients.add(client)
        client.sender = asyncio.create_task(client.send_loop())

        try:
            async for message in ws:
                if isinstance(message, bytes):
                    logger.info("client_sent_binary", peer=client.peer)
                    await ws.close(CLOSE_UNSUPPORTED_DATA, "binary frames are not supported")
                    break
                self._handle_frame(client, message)
        except ConnectionClosed as e:
            logger.debug("client_connection_closed", peer=client.peer, error=str(e))
        finally:
            self._forget(client)
            logger.info("client_disconnected", peer=client.peer)

    def _handle_frame(self, client: UATClient, text: str) -> None:
        try:
            items = decode_frame(text)
        except BadFrame as e:
            replies: list[UATCommand] = [ErrorReplyCommand(name="", reason=BAD_FRAME, description=str(e))]
        else:
            replies = []
            for item in items:
                command = parse_client_command(item)
                if isinstance(command, SyncCommand):
                    # Var only carries numeric slots; named slots get untagged values
                    slot = command.slot if isinstance(command.slot, int) else None
                    replies.extend(self._full_state(slot))
                else:
                    logger.info("client_command_rejected", peer=client.peer, reply=command.to_wire())
                    replies.append(command)
        if not replies:
            return
        try:
            client.enqueue(encode_frame(replies))
        except ClientOverloaded as e:
            self._drop(client, str(e))
