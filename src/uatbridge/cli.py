# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from uatbridge.bridge import Bridge
from uatbridge.errors import ConnectError, ReconnectExhausted, ScriptLoadError
from uatbridge.logging import configure_logging, get_logger
from uatbridge.memory.base import MemoryBackend
from uatbridge.memory.factory import create_backend
from uatbridge.scripting.runtime import ScriptRuntime
from uatbridge.selector import InterfaceRegistry
from uatbridge.settings import Settings
from uatbridge.uat.server import UATServer
from uatbridge.variables import VariableStore

logger = get_logger(__name__)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli() -> None:
    """uatbridge command line interface."""


def _backend_or_fail(target: str, settings: Settings) -> MemoryBackend:
    try:
        return create_backend(target, settings)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="TARGET") from e


def load_scripts(paths: tuple[Path, ...], settings: Settings) -> tuple[InterfaceRegistry, list[ScriptRuntime]]:
    """Load every script into its own runtime, sharing one registry."""
    registry = InterfaceRegistry()
    runtimes = []
    for path in paths:
        runtimes.append(
            ScriptRuntime.from_file(
                path,
                registry,
                step_budget=settings.script_step_budget,
                max_memory=settings.script_max_memory,
            )
        )
    return registry, runtimes


@cli.command("run")
@click.argument("target")
@click.argument("scripts", nargs=-1, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wait/--no-wait", default=False, show_default=True, help="Keep retrying until the target is up.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between cycles.")
@click.option("--host", default=None, help="Address for the UAT server.")
@click.option("--port", "ports", type=int, multiple=True, help="UAT port (repeatable).")
@click.option("--keepalive-empty-diffs/--no-keepalive-empty-diffs", default=None)
@click.option("--log-level", default=None, help="Override UATBRIDGE_LOG_LEVEL.")
def run(
    target: str,
    scripts: tuple[Path, ...],
    wait: bool,
    poll_interval: float | None,
    host: str | None,
    ports: tuple[int, ...],
    keepalive_empty_diffs: bool | None,
    log_level: str | None,
) -> None:
    """Serve game state from TARGET to UAT trackers.

    TARGET is "dolphin" for a local emulator or the IP address of a console
    running the Nintendont memory server. Each SCRIPT is a Lua file that
    registers game interfaces.

    Examples:
        uatbridge run dolphin examples/gcn_example.lua
        uatbridge run 192.168.1.50 --wait game.lua
    """
    settings = Settings()
    updates: dict[str, object] = {}
    if poll_interval is not None:
        updates["poll_interval_s"] = poll_interval
    if keepalive_empty_diffs is not None:
        updates["keepalive_empty_diffs"] = keepalive_empty_diffs
    if log_level is not None:
        updates["log_level"] = log_level
    uat_updates: dict[str, object] = {}
    if host is not None:
        uat_updates["host"] = host
    if ports:
        uat_updates["ports"] = list(ports)
    if uat_updates:
        updates["uat"] = settings.uat.model_copy(update=uat_updates)
    settings = settings.model_copy(update=updates)
    configure_logging(settings)

    backend = _backend_or_fail(target, settings)
    try:
        registry, runtimes = load_scripts(scripts, settings)
    except ScriptLoadError as e:
        raise click.ClickException(str(e)) from e
    if not len(registry):
        logger.warning("no_interfaces_registered", scripts=[str(p) for p in scripts])

    store = VariableStore()
    server = UATServer(
        store,
        host=settings.uat.host,
        ports=settings.uat.ports,
        client_queue_size=settings.uat.client_queue_size,
        keepalive_empty_diffs=settings.keepalive_empty_diffs,
    )
    bridge = Bridge(backend, registry, runtimes, server, store, settings)

    try:
        asyncio.run(bridge.serve(wait=wait))
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)
    except (ConnectError, ReconnectExhausted) as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    except OSError as e:
        raise click.ClickException(f"Cannot start UAT server: {e}") from e


@cli.command("check")
@click.argument("target")
@click.option("--log-level", default=None, help="Override UATBRIDGE_LOG_LEVEL.")
def check(target: str, log_level: str | None) -> None:
    """Connect to TARGET once and print the connection details."""
    settings = Settings()
    configure_logging(settings, level=log_level)
    backend = _backend_or_fail(target, settings)

    async def _check() -> dict[str, object]:
        await backend.connect()
        try:
            return backend.describe()
        finally:
            await backend.disconnect()

    try:
        details = asyncio.run(_check())
    except ConnectError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    click.echo(json.dumps(details, indent=2))


if __name__ == "__main__":
    cli()
