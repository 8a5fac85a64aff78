"""!
@brief Settings resolution tests.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import config  # noqa: E402


def test_defaults() -> None:
    settings = config.resolve_settings(env={})

    assert settings == config.JanitorSettings()
    assert settings.settle_delay == 2.0
    assert settings.partial_clear_threshold == 0.5
    assert settings.strict_success_marker is False
    assert settings.command_timeout_ceiling is None


def test_precedence_cli_over_env_over_file() -> None:
    file_values = {"settle-delay": 5, "partial-clear-threshold": 0.9, "max-workers": 4}
    env = {"APPX_JANITOR_SETTLE_DELAY": "3", "APPX_JANITOR_PARTIAL_CLEAR_THRESHOLD": "0.7"}
    cli = {"settle_delay": 0.0, "partial_clear_threshold": None}

    settings = config.resolve_settings(cli, env=env, file_values=file_values)

    assert settings.settle_delay == 0.0
    assert settings.partial_clear_threshold == 0.7
    assert settings.max_workers == 4


@pytest.mark.parametrize(("raw", "expected"), [("yes", True), ("0", False), ("TRUE", True), ("off", False)])
def test_boolean_environment_values(raw: str, expected: bool) -> None:
    settings = config.resolve_settings(env={"APPX_JANITOR_STRICT_SUCCESS_MARKER": raw})

    assert settings.strict_success_marker is expected


def test_underscore_keys_accepted_in_file() -> None:
    settings = config.resolve_settings(env={}, file_values={"command_timeout_ceiling": 45})

    assert settings.command_timeout_ceiling == 45.0


@pytest.mark.parametrize(
    "file_values",
    [
        {"partial-clear-threshold": 1.5},
        {"max-workers": 0},
        {"settle-delay": "soon"},
        {"strict-success-marker": "maybe"},
    ],
)
def test_invalid_values_raise_value_error(file_values) -> None:
    with pytest.raises(ValueError):
        config.resolve_settings(env={}, file_values=file_values)


def test_load_config_file_reads_object(tmp_path: Path) -> None:
    path = tmp_path / "janitor.json"
    path.write_text(json.dumps({"settle-delay": 1}), encoding="utf-8")

    assert config.load_config_file(str(path)) == {"settle-delay": 1}
    assert config.load_config_file(None) == {}


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_load_config_file_rejects_bad_content(tmp_path: Path, content: str, capsys) -> None:
    path = tmp_path / "janitor.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        config.load_config_file(str(path))

    assert excinfo.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_load_config_file_missing(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        config.load_config_file(str(tmp_path / "absent.json"))

    assert excinfo.value.code == 1
