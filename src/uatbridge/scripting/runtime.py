# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Sandboxed Lua runtime for one game-interface script.

Each script file gets its own interpreter. The only host functionality a
script can reach is the capability tables installed here:

- ``ScriptHost:CreateGameInterface()`` / ``ScriptHost:AddGameInterface(name, iface)``
- ``GameCube:ReadSingle(address, type, offset?)`` / ``GameCube:Read(list)``
- ``store:WriteVariable(name, value)`` on the store passed to ``GameWatcher``

Every callback runs under an instruction budget enforced with a Lua count
hook, so a runaway script raises ``ScriptTimeout`` instead of hanging the
poller.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from lupa import LuaError, LuaRuntime, lua_type

from uatbridge.constants import DEFAULT_SCRIPT_STEP_BUDGET, GCN_BASE_ADDRESS
from uatbridge.errors import ConnectionLost, HostCallError, ScriptError, ScriptLoadError, ScriptTimeout
from uatbridge.logging import get_logger
from uatbridge.memory.base import ReadRequest
from uatbridge.memory.codec import ReadResult, TypeSpecifier, decode
from uatbridge.scripting.convert import lua_key, lua_string, lua_to_json, string_list
from uatbridge.scripting.interface import GameInterface
from uatbridge.uat.commands import InfoCommand

if TYPE_CHECKING:
    from uatbridge.selector import InterfaceRegistry
    from uatbridge.variables import CycleWrites

logger = get_logger(__name__)

BatchReader = Callable[[Sequence[ReadRequest]], list[bytes | None]]

# Globals scripts must not see
SANDBOX_REMOVED = (
    "os",
    "io",
    "package",
    "require",
    "dofile",
    "loadfile",
    "load",
    "loadstring",
    "debug",
    "collectgarbage",
    "python",
)

_HOOK_WRAPPER = "function(f) return function() f() end end"

# Finalizers would run outside any budgeted call
_NO_FINALIZERS = """
local setmetatable, rawget, type, error = setmetatable, rawget, type, error
return function(t, mt)
    if type(mt) == "table" and rawget(mt, "__gc") ~= nil then
        error("__gc metamethods are not available to scripts", 2)
    end
    return setmetatable(t, mt)
end
"""

_ADDRESS_LIMIT = 0xFFFFFFFF
_OFFSET_MIN, _OFFSET_MAX = -0x8000, 0x7FFF


def _integer(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise HostCallError(f"{what} must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        raise HostCallError(f"{what} must be an integer, got {value!r}")
    return value


def make_request(address: Any, type_spec: Any, offset: Any = None) -> ReadRequest:
    """Validate a script-supplied ``(address, type, offset)`` tuple."""
    address = _integer(address, "address")
    if not 0 <= address <= _ADDRESS_LIMIT:
        raise HostCallError(f"address {address:#x} is out of range")
    if offset is not None:
        offset = _integer(offset, "offset")
        if not _OFFSET_MIN <= offset <= _OFFSET_MAX:
            raise HostCallError(f"offset {offset} does not fit in 16 bits")
    return ReadRequest(address, TypeSpecifier.parse(type_spec), offset)


def _not_connected(requests: Sequence[ReadRequest]) -> list[bytes | None]:
    raise ConnectionLost("Not connected")


class ScriptRuntime:
    """One isolated Lua interpreter and the interfaces its script registers."""

    def __init__(
        self,
        label: str,
        registry: InterfaceRegistry,
        *,
        step_budget: int = DEFAULT_SCRIPT_STEP_BUDGET,
        max_memory: int | None = None,
        reader: BatchReader | None = None,
    ) -> None:
        self.label = label
        self._registry = registry
        self._step_budget = step_budget
        self._reader: BatchReader = reader or _not_connected
        self._running: str = label
        self._exhausted = False
        self._lost: ConnectionLost | None = None

        options: dict[str, Any] = {
            "encoding": "latin-1",
            "register_eval": False,
            "register_builtins": False,
            "unpack_returned_tuples": True,
        }
        if max_memory:
            options["max_memory"] = max_memory
        self._lua = LuaRuntime(**options)

        lua_globals = self._lua.globals()
        self._sethook = lua_globals.debug.sethook
        self._hook = self._lua.eval(_HOOK_WRAPPER)(self._budget_exhausted)
        for name in SANDBOX_REMOVED:
            lua_globals[name] = None
        lua_globals.setmetatable = self._lua.execute(_NO_FINALIZERS)
        lua_globals.print = self._print
        self._install_capabilities()

    @classmethod
    def from_file(cls, path: Path | str, registry: InterfaceRegistry, **kwargs: Any) -> ScriptRuntime:
        """Create a runtime and execute the script at ``path``.

        Raises:
            ScriptLoadError: If the file cannot be read or its top level fails
        """
        path = Path(path)
        try:
            source = path.read_bytes()
        except OSError as e:
            raise ScriptLoadError(f"Cannot read script {path}: {e}") from e
        runtime = cls(path.name, registry, **kwargs)
        runtime.load(source)
        return runtime

    def bind_reader(self, reader: BatchReader) -> None:
        """Route read primitives through ``reader`` (blocking, batch in, bytes out)."""
        self._reader = reader

    def load(self, source: str | bytes) -> None:
        """Execute a script's top level, which registers its interfaces."""
        if isinstance(source, str):
            source = source.encode("utf-8")
        try:
            self._guarded(self.label, self._lua.execute, source)
        except ScriptError as e:
            raise ScriptLoadError(str(e)) from e
        except ConnectionLost as e:
            raise ScriptLoadError(f"{self.label}: {e}") from e
        logger.info("script_loaded", script=self.label)

    def verify(self, interface: GameInterface) -> bool:
        """Run ``VerifyFunc``; a missing callback never matches.

        Raises:
            ScriptError: If the callback fails or exceeds its budget
            ConnectionLost: If the backend dropped during a read
        """
        if interface.verify is None:
            return False
        result = self._guarded(interface.key, interface.verify, interface.table)
        if isinstance(result, tuple):
            result = result[0] if result else None
        return result is not None and result is not False

    def run_watcher(self, interface: GameInterface, writes: CycleWrites) -> None:
        """Run ``GameWatcher`` with a store that appends into ``writes``.

        Raises:
            ScriptError: If the callback fails or exceeds its budget
            ConnectionLost: If the backend dropped during a read
        """
        if interface.watcher is None:
            return

        def write_variable(_store: Any = None, name: Any = None, value: Any = None) -> None:
            key = lua_key(name)
            try:
                converted = lua_to_json(value)
            except HostCallError as e:
                logger.warning("variable_conversion_failed", interface=interface.label, variable=key, error=str(e))
                return
            writes.write(key, converted)

        store = self._lua.table_from({"WriteVariable": write_variable})
        self._guarded(interface.key, interface.watcher, interface.table, store)

    def info(self, interface: GameInterface) -> InfoCommand:
        """Build Info from the interface table's current ``Name``/``Version``/``Features``/``Slots``.

        Raises:
            ScriptError: If a field has the wrong type or a metamethod fails
        """
        self._guarded(interface.key, self._read_fields, interface)
        return interface.info()

    def _guarded(self, name: str, func: Callable[..., Any], *args: Any) -> Any:
        """Call into Lua under the instruction budget.

        A budget overrun or a lost backend is remembered for the whole call,
        so a script that catches the error with ``pcall`` still fails.
        """
        self._running = name
        self._exhausted = False
        self._lost = None
        self._sethook(self._hook, "", self._step_budget)
        try:
            result = func(*args)
        except (LuaError, HostCallError) as e:
            self._raise_pending(name)
            raise ScriptError(name, e) from e
        except ScriptTimeout:
            self._raise_pending(name)
            raise
        finally:
            self._sethook()
            self._running = self.label
        self._raise_pending(name)
        return result

    def _raise_pending(self, name: str) -> None:
        if self._lost is not None:
            raise self._lost
        if self._exhausted:
            raise ScriptTimeout(name, f"exceeded {self._step_budget} instructions")

    def _budget_exhausted(self) -> None:
        # Once over budget, every further instruction fails
        self._exhausted = True
        self._sethook(self._hook, "", 1)
        raise ScriptTimeout(self._running, f"exceeded {self._step_budget} instructions")

    def _print(self, *args: Any) -> None:
        text = "\t".join(lua_string(a) if isinstance(a, (str, bytes)) else str(a) for a in args)
        logger.info("script_print", script=self.label, message=text)

    def _install_capabilities(self) -> None:
        lua_globals = self._lua.globals()
        lua_globals.ScriptHost = self._lua.table_from(
            {
                "CreateGameInterface": self._create_game_interface,
                "AddGameInterface": self._add_game_interface,
            }
        )
        lua_globals.GameCube = self._lua.table_from(
            {
                "GameIDAddress": GCN_BASE_ADDRESS,
                "ReadSingle": self._read_single,
                "Read": self._read,
            }
        )

    def _create_game_interface(self, _host: Any = None) -> Any:
        return self._lua.table()

    def _add_game_interface(self, _host: Any = None, name: Any = None, table: Any = None) -> None:
        key = lua_key(name)
        if lua_type(table) != "table":
            raise HostCallError(f"AddGameInterface({key!r}) needs a table from CreateGameInterface()")

        def callback(field: str) -> Any:
            value = table[field]
            if value is not None and lua_type(value) != "function":
                raise HostCallError(f"{key}.{field} must be a function")
            return value

        interface = GameInterface(
            key=key,
            runtime=self,
            verify=callback("VerifyFunc"),
            watcher=callback("GameWatcher"),
            table=table,
        )
        self._read_fields(interface)
        self._registry.register(interface)

    def _read_fields(self, interface: GameInterface) -> None:
        table = interface.table

        def text(field: str) -> str | None:
            value = table[field]
            return None if value is None else lua_key(value)

        interface.display_name = text("Name")
        interface.version = text("Version")
        interface.features = string_list(table["Features"])
        interface.slots = string_list(table["Slots"])

    def _read_single(
        self, _gamecube: Any = None, address: Any = None, type_spec: Any = None, offset: Any = None
    ) -> ReadResult:
        (value,) = self._read_values([make_request(address, type_spec, offset)])
        return value

    def _read(self, _gamecube: Any = None, read_list: Any = None) -> Any:
        if lua_type(read_list) != "table":
            raise HostCallError("Read() expects a list of {address, type, offset} tables")
        requests = []
        for index in range(1, len(read_list) + 1):
            entry = read_list[index]
            if lua_type(entry) != "table":
                raise HostCallError("Read() expects a list of {address, type, offset} tables")
            requests.append(make_request(entry[1], entry[2], entry[3]))
        return self._lua.table_from(self._read_values(requests))

    def _read_values(self, requests: Sequence[ReadRequest]) -> list[ReadResult]:
        if self._lost is not None:
            raise ConnectionLost(str(self._lost))
        try:
            data = self._reader(requests)
        except ConnectionLost as e:
            self._lost = e
            raise
        return [decode(chunk, request.type) for chunk, request in zip(data, requests, strict=True)]
