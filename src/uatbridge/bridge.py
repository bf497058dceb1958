# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Polling scheduler tying backend, scripts, store and server together.

The event loop owns backend I/O and the UAT server. Lua runs on a single
worker thread; when a script reads memory the batch is handed back to the
loop and the worker blocks on the result. Cycles never overlap.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from uatbridge.errors import ConnectError, ConnectionLost, ReconnectExhausted, ScriptError
from uatbridge.logging import get_logger
from uatbridge.retry import retry_with_backoff
from uatbridge.selector import InterfaceRegistry, Selector
from uatbridge.variables import CycleWrites

if TYPE_CHECKING:
    from uatbridge.memory.base import MemoryBackend, ReadRequest
    from uatbridge.scripting.interface import GameInterface
    from uatbridge.scripting.runtime import ScriptRuntime
    from uatbridge.settings import Settings
    from uatbridge.uat.commands import InfoCommand
    from uatbridge.uat.server import UATServer
    from uatbridge.variables import VariableStore

logger = get_logger(__name__)


@dataclass
class CycleOutcome:
    """What the script thread decided during one cycle."""

    active: GameInterface | None
    changed: bool
    snapshot: dict[str, Any] | None = None
    info: InfoCommand | None = None


class Bridge:
    """Runs the verify/watch/diff/broadcast cycle at a fixed cadence."""

    def __init__(
        self,
        backend: MemoryBackend,
        registry: InterfaceRegistry,
        runtimes: Sequence[ScriptRuntime],
        server: UATServer,
        store: VariableStore,
        settings: Settings,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.runtimes = list(runtimes)
        self.server = server
        self.store = store
        self.settings = settings
        self.selector = Selector(registry)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="uatbridge-scripts")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._stopping = asyncio.Event()
        self.cycles = 0
        for runtime in self.runtimes:
            runtime.bind_reader(self.read_blocking)

    def read_blocking(self, requests: Sequence[ReadRequest]) -> list[bytes | None]:
        """Read a batch from the script thread via the event loop.

        Raises:
            ConnectionLost: If the backend is down or drops during the read
            RuntimeError: If called on the event loop thread itself
        """
        if self._loop is None:
            raise ConnectionLost("Bridge is not running")
        if threading.get_ident() == self._loop_thread:
            raise RuntimeError("read_blocking() would deadlock on the event loop thread")
        future = asyncio.run_coroutine_threadsafe(self.backend.read_batch(list(requests)), self._loop)
        return future.result()

    async def connect(self, wait: bool = False) -> None:
        """Connect the backend, retrying forever when ``wait`` is set.

        Raises:
            ConnectError: If the first attempt fails and ``wait`` is not set
        """
        while True:
            try:
                await self.backend.connect()
            except ConnectError as e:
                if not wait:
                    raise
                logger.info(
                    "backend_waiting",
                    backend=self.backend.name,
                    error=str(e),
                    retry_in=self.settings.connect_retry_interval_s,
                )
                await asyncio.sleep(self.settings.connect_retry_interval_s)
                continue
            logger.info("backend_connected", **self.backend.describe())
            return

    async def run_cycle(self) -> dict[str, Any] | None:
        """Run one cycle and return the diff broadcast, or None if nothing was published.

        Raises:
            ReconnectExhausted: If a lost backend could not be brought back
        """
        self._bind_loop()
        if not self.backend.is_connected():
            await self._reconnect()

        assert self._loop is not None
        try:
            outcome = await self._loop.run_in_executor(self._executor, self._run_scripts)
        except ConnectionLost as e:
            logger.warning("backend_connection_lost", backend=self.backend.name, error=str(e))
            await self._reconnect()
            return None
        finally:
            self.cycles += 1

        if outcome.changed or outcome.info != self.server.info:
            self.server.set_info(outcome.info)
        if outcome.snapshot is None:
            return None
        diff = self.store.publish(outcome.snapshot)
        self.server.broadcast_diff(diff)
        return diff

    def _run_scripts(self) -> CycleOutcome:
        result = self.selector.verify_all()
        active = result.active
        if not result.run_watcher or active is None:
            return CycleOutcome(active, result.changed)

        writes = CycleWrites()
        try:
            active.runtime.run_watcher(active, writes)
            info = active.runtime.info(active)
        except ScriptError as e:
            logger.warning("script_error", interface=active.label, error=str(e.cause))
            self.selector.reject(active)
            return CycleOutcome(None, changed=True)
        return CycleOutcome(active, result.changed, writes.snapshot(), info)

    async def _reconnect(self) -> None:
        async def attempt() -> None:
            await self.backend.disconnect()
            await self.backend.connect()

        try:
            await retry_with_backoff(
                attempt,
                max_retries=self.settings.reconnect_max_retries,
                initial_delay=self.settings.reconnect_initial_delay_s,
                backoff_multiplier=self.settings.reconnect_backoff_multiplier,
            )
        except (ConnectError, ConnectionLost) as e:
            raise ReconnectExhausted(f"Could not reconnect to {self.backend.name}: {e}") from e
        self.selector.reset()
        self.server.set_info(None)
        logger.info("backend_reconnected", **self.backend.describe())

    def _bind_loop(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
            self._loop_thread = threading.get_ident()

    async def run(self) -> None:
        """Poll until ``stop()`` is called."""
        self._bind_loop()
        assert self._loop is not None
        interval = self.settings.poll_interval_s
        logger.info("bridge_started", interfaces=len(self.registry), poll_interval_s=interval)
        while not self._stopping.is_set():
            started = self._loop.time()
            await self.run_cycle()
            remaining = interval - (self._loop.time() - started)
            if remaining <= 0:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=remaining)
            except TimeoutError:
                continue

    async def serve(self, wait: bool = False) -> None:
        """Start the server, connect the backend and poll until stopped."""
        await self.server.start()
        try:
            await self.connect(wait=wait)
            await self.run()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self._stopping.set()

    async def shutdown(self) -> None:
        await self.server.stop()
        await self.backend.disconnect()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("bridge_stopped", cycles=self.cycles)
