from __future__ import annotations

import ctypes
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import elevation  # noqa: E402


def test_is_admin_true(monkeypatch):
    fake_shell32 = SimpleNamespace(IsUserAnAdmin=lambda: 1)
    monkeypatch.setattr(elevation.os, "name", "nt")
    monkeypatch.setattr(ctypes, "windll", SimpleNamespace(shell32=fake_shell32), raising=False)
    assert elevation.is_admin() is True


def test_relaunch_as_admin_runs_module(monkeypatch):
    called = {}

    def fake_shell_execute(_, verb, exe, params, directory, show):
        called["verb"] = verb
        called["exe"] = exe
        called["params"] = params
        return 42

    monkeypatch.setattr(elevation.os, "name", "nt")
    monkeypatch.setattr(
        ctypes, "windll", SimpleNamespace(shell32=SimpleNamespace(ShellExecuteW=fake_shell_execute)), raising=False
    )
    assert elevation.relaunch_as_admin(["--diagnose", "Contoso.Notes"]) is True
    assert called["verb"] == "runas"
    assert called["exe"] == sys.executable
    assert called["params"].startswith("-m appx_janitor")
    assert "--diagnose" in called["params"]


def test_ensure_admin_raises_when_request_rejected(monkeypatch):
    monkeypatch.setattr(elevation.os, "name", "nt")
    monkeypatch.setattr(elevation, "is_admin", lambda: False)
    monkeypatch.setattr(elevation, "relaunch_as_admin", lambda argv=None: False)

    with pytest.raises(SystemExit) as excinfo:
        elevation.ensure_admin_and_relaunch_if_needed([])

    assert "elevation" in str(excinfo.value.code)


def test_ensure_admin_noop_when_already_admin(monkeypatch):
    monkeypatch.setattr(elevation.os, "name", "nt")
    monkeypatch.setattr(elevation, "is_admin", lambda: True)

    elevation.ensure_admin_and_relaunch_if_needed([])


def test_current_username_falls_back_to_environment(monkeypatch):
    def broken_getlogin():
        raise OSError("no controlling terminal")

    monkeypatch.setattr(elevation.os, "getlogin", broken_getlogin)
    monkeypatch.setenv("USERNAME", "alice")
    monkeypatch.setenv("USERDOMAIN", "CONTOSO")

    assert elevation.current_username() == "alice"
    assert elevation.qualified_username() == "CONTOSO\\alice"
