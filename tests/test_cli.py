"""Tests for the command line interface."""

from __future__ import annotations

import importlib
import tomllib
from pathlib import Path
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from uatbridge.cli import cli
from uatbridge.errors import Unreachable


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "run" in result.output
    assert "check" in result.output


def test_console_script_points_at_cli() -> None:
    pyproject = tomllib.loads((Path(__file__).parents[1] / "pyproject.toml").read_text())
    module_name, attr = pyproject["project"]["scripts"]["uatbridge"].split(":")
    assert getattr(importlib.import_module(module_name), attr) is cli


def test_run_rejects_bad_target() -> None:
    result = CliRunner().invoke(cli, ["run", "not-a-target"])
    assert result.exit_code == 2
    assert "TARGET" in result.output


def test_run_reports_bad_script(tmp_path: Path) -> None:
    script = tmp_path / "broken.lua"
    script.write_text("this is not lua")
    result = CliRunner().invoke(cli, ["run", "127.0.0.1", str(script)])
    assert result.exit_code == 1
    assert "broken.lua" in result.output


def test_run_exits_when_target_unreachable(tmp_path: Path) -> None:
    script = tmp_path / "game.lua"
    script.write_text('ScriptHost:AddGameInterface("g", ScriptHost:CreateGameInterface())')
    with patch("uatbridge.cli.Bridge.serve", AsyncMock(side_effect=Unreachable("no console"))) as serve:
        result = CliRunner().invoke(cli, ["run", "127.0.0.1", str(script), "--port", "0", "--poll-interval", "0.1"])
    assert result.exit_code == 1
    assert "Unreachable: no console" in result.output
    serve.assert_awaited_once_with(wait=False)


def test_check_prints_details() -> None:
    details = {"backend": "nintendont", "connected": True, "host": "10.0.0.5", "port": 43673}
    with (
        patch("uatbridge.memory.nintendont.NintendontBackend.connect", AsyncMock()),
        patch("uatbridge.memory.nintendont.NintendontBackend.disconnect", AsyncMock()),
        patch("uatbridge.memory.nintendont.NintendontBackend.describe", return_value=details),
    ):
        result = CliRunner().invoke(cli, ["check", "10.0.0.5"])
    assert result.exit_code == 0
    assert '"host": "10.0.0.5"' in result.output


def test_check_unreachable() -> None:
    with patch("uatbridge.memory.nintendont.NintendontBackend.connect", AsyncMock(side_effect=Unreachable("down"))):
        result = CliRunner().invoke(cli, ["check", "10.0.0.5"])
    assert result.exit_code == 1
    assert "down" in result.output
