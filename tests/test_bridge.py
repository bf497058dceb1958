"""Tests for the polling scheduler."""

from __future__ import annotations

import asyncio
import json

import pytest
from websockets.asyncio.client import connect

from tests.fakes import FakeBackend, GameMemory
from uatbridge.bridge import Bridge
from uatbridge.errors import ReconnectExhausted, Unreachable
from uatbridge.memory.base import ReadRequest
from uatbridge.memory.chaos import ChaosBackend
from uatbridge.memory.codec import TypeSpecifier
from uatbridge.scripting.runtime import ScriptRuntime
from uatbridge.selector import CandidateState, InterfaceRegistry
from uatbridge.settings import Settings
from uatbridge.uat.server import UATServer
from uatbridge.variables import VariableStore

GAME_SCRIPT = """
local i = ScriptHost:CreateGameInterface()
i.Name = "Test Game"
i.Version = "2"
function i:VerifyFunc()
    return GameCube:ReadSingle(GameCube.GameIDAddress, "string:6") == "GTST01"
end
function i:GameWatcher(store)
    local v = GameCube:Read({{0x80001000, "u8"}, {0x80001001, "u8"}})
    if v[2] == 0xEE then error("corrupt save") end
    store:WriteVariable("hp", v[1])
end
ScriptHost:AddGameInterface("test", i)
"""


def make_bridge(
    backend: FakeBackend | ChaosBackend,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> Bridge:
    runtime = ScriptRuntime("game.lua", registry, step_budget=settings.script_step_budget)
    runtime.load(GAME_SCRIPT)
    server = UATServer(store, ports=settings.uat.ports)
    return Bridge(backend, registry, [runtime], server, store, settings)


@pytest.fixture
def game_memory(memory: GameMemory) -> GameMemory:
    memory.poke(0x80000000, b"GTST01")
    memory.poke(0x80001000, b"\x03")
    return memory


@pytest.mark.asyncio
async def test_cycle_publishes_diff(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    try:
        assert await bridge.run_cycle() == {"hp": 3}
        assert bridge.server.info is not None
        assert bridge.server.info.name == "Test Game"
        assert await bridge.run_cycle() == {}

        game_memory.poke(0x80001000, b"\x02")
        assert await bridge.run_cycle() == {"hp": 2}
        assert store.snapshot() == {"hp": 2}
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_no_matching_game_publishes_nothing(
    fake_backend: FakeBackend,
    memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    try:
        assert await bridge.run_cycle() is None
        assert bridge.server.info is None
        assert len(store) == 0
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_watcher_error_publishes_nothing(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    try:
        assert await bridge.run_cycle() == {"hp": 3}
        game_memory.poke(0x80001001, b"\xee")
        assert await bridge.run_cycle() is None
        assert bridge.selector.active is None
        assert store.snapshot() == {"hp": 3}

        game_memory.poke(0x80001001, b"\x00")
        assert await bridge.run_cycle() == {}
        assert bridge.selector.active is not None
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_connection_lost_triggers_reconnect(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    fake_backend.drop_on_batch = 1
    try:
        assert await bridge.run_cycle() is None
        assert fake_backend.is_connected()
        assert fake_backend.connect_calls == 2
        assert await bridge.run_cycle() == {"hp": 3}
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_reconnect_exhaustion_is_fatal(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    fake_backend.drop_on_batch = 1
    fake_backend.fail_connects = 10
    try:
        with pytest.raises(ReconnectExhausted):
            await bridge.run_cycle()
        # initial connect plus 1 + reconnect_max_retries attempts
        assert fake_backend.connect_calls == 1 + 1 + settings.reconnect_max_retries
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_connect_waits_for_target(
    fake_backend: FakeBackend,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    fake_backend.fail_connects = 2
    try:
        await bridge.connect(wait=True)
        assert fake_backend.connect_calls == 3
        assert fake_backend.is_connected()
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_connect_without_wait_fails_fast(
    fake_backend: FakeBackend,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    fake_backend.fail_connects = 1
    try:
        with pytest.raises(Unreachable):
            await bridge.connect()
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_read_blocking_refuses_loop_thread(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    await bridge.connect()
    try:
        await bridge.run_cycle()
        with pytest.raises(RuntimeError):
            bridge.read_blocking([ReadRequest(0x80000000, TypeSpecifier.parse("u8"))])
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_chaos_backend_recovers(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    backend = ChaosBackend(fake_backend, disconnect_every_n_batches=3)
    bridge = make_bridge(backend, registry, store, settings)
    await bridge.connect()
    try:
        results = [await bridge.run_cycle() for _ in range(6)]
        assert None in results
        assert store.snapshot() == {"hp": 3}
        assert fake_backend.connect_calls > 1
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_serve_streams_to_tracker(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    bridge = make_bridge(fake_backend, registry, store, settings)
    task = asyncio.create_task(bridge.serve())
    try:
        for _ in range(200):
            if bridge.server.ports and bridge.cycles:
                break
            await asyncio.sleep(0.01)
        async with connect(f"ws://127.0.0.1:{bridge.server.ports[0]}") as ws:
            frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
            assert frame[0]["cmd"] == "Info"
            assert frame[0]["name"] == "Test Game"
            assert {"cmd": "Var", "name": "hp", "value": 3} in frame

            game_memory.poke(0x80001000, b"\x09")
            update = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
            assert update == [{"cmd": "Var", "name": "hp", "value": 9}]
    finally:
        bridge.stop()
        await asyncio.wait_for(task, timeout=5.0)
    assert not fake_backend.is_connected()


@pytest.mark.asyncio
async def test_swallowed_connection_loss_skips_cycle(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    runtime = ScriptRuntime("game.lua", registry, step_budget=settings.script_step_budget)
    runtime.load(
        """
        local i = ScriptHost:CreateGameInterface()
        function i:VerifyFunc() return true end
        function i:GameWatcher(store)
            store:WriteVariable("hp", GameCube:ReadSingle(0x80001000, "u8"))
            local ok, mp = pcall(GameCube.ReadSingle, GameCube, 0x80001001, "u8")
            store:WriteVariable("mp", mp)
        end
        ScriptHost:AddGameInterface("careless", i)
        """
    )
    bridge = Bridge(fake_backend, registry, [runtime], UATServer(store, ports=[0]), store, settings)
    await bridge.connect()
    try:
        assert await bridge.run_cycle() == {"hp": 3, "mp": 0}
        # second cycle reads hp on batch 3 and mp on batch 4
        fake_backend.drop_on_batch = 4
        assert await bridge.run_cycle() is None
        assert store.snapshot() == {"hp": 3, "mp": 0}
        assert fake_backend.is_connected()
        assert fake_backend.connect_calls == 2
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_watcher_timeout_does_not_block_other_interfaces(
    fake_backend: FakeBackend,
    memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    runtime = ScriptRuntime("games.lua", registry, step_budget=settings.script_step_budget)
    runtime.load(
        """
        local other = ScriptHost:CreateGameInterface()
        other.Name = "Other"
        function other:VerifyFunc() return GameCube:ReadSingle(0x80000100, "u8") == 1 end
        function other:GameWatcher(store) store:WriteVariable("ok", true) end
        ScriptHost:AddGameInterface("other", other)

        local spin = ScriptHost:CreateGameInterface()
        spin.Name = "Spin"
        function spin:VerifyFunc() return true end
        function spin:GameWatcher(store)
            while true do pcall(function() while true do end end) end
        end
        ScriptHost:AddGameInterface("spin", spin)
        """
    )
    bridge = Bridge(fake_backend, registry, [runtime], UATServer(store, ports=[0]), store, settings)
    await bridge.connect()
    try:
        assert await asyncio.wait_for(bridge.run_cycle(), timeout=10.0) is None
        assert bridge.selector.active is None

        memory.poke(0x80000100, b"\x01")
        assert await asyncio.wait_for(bridge.run_cycle(), timeout=10.0) == {"ok": True}
        assert bridge.selector.active is not None
        assert bridge.selector.active.key == "other"
        assert bridge.server.info is not None
        assert bridge.server.info.name == "Other"
        spin = next(i for i in registry if i.key == "spin")
        assert bridge.selector.state(spin) is CandidateState.VERIFIED
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_info_follows_renamed_interface(
    fake_backend: FakeBackend,
    game_memory: GameMemory,
    registry: InterfaceRegistry,
    store: VariableStore,
    settings: Settings,
) -> None:
    runtime = ScriptRuntime("game.lua", registry, step_budget=settings.script_step_budget)
    runtime.load(
        """
        local i = ScriptHost:CreateGameInterface()
        i.Name = "Title Screen"
        function i:VerifyFunc() return true end
        function i:GameWatcher(store)
            if GameCube:ReadSingle(0x80001000, "u8") == 9 then self.Name = "In Game" end
        end
        ScriptHost:AddGameInterface("g", i)
        """
    )
    bridge = Bridge(fake_backend, registry, [runtime], UATServer(store, ports=[0]), store, settings)
    await bridge.connect()
    try:
        await bridge.run_cycle()
        assert bridge.server.info is not None
        assert bridge.server.info.name == "Title Screen"

        game_memory.poke(0x80001000, b"\x09")
        await bridge.run_cycle()
        assert bridge.server.info.name == "In Game"
    finally:
        await bridge.shutdown()
