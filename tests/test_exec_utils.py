"""!
@brief Exec utils behaviour tests.
@details Validates environment sanitisation, timeout handling, cancellation,
and subprocess logging behaviour for :mod:`appx_janitor.exec_utils`.
"""

from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import exec_utils  # noqa: E402
from appx_janitor.cancellation import CancellationToken  # noqa: E402


class _StubLogger:
    """!
    @brief Lightweight logger capturing structured log calls.
    """

    def __init__(self) -> None:
        self.records: List[tuple[str, str, Dict[str, object]]] = []

    def _record(self, level: str, message: str, args: tuple[object, ...], kwargs: Dict[str, object]) -> None:
        text = message % args if args else message
        self.records.append((level, text, dict(kwargs)))

    def info(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("info", message, args, kwargs)

    def warning(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("warning", message, args, kwargs)

    def error(self, message: str, *args: object, **kwargs: object) -> None:  # noqa: D401 - logging compatibility
        self._record("error", message, args, kwargs)


@pytest.fixture
def loggers(monkeypatch: pytest.MonkeyPatch) -> tuple[_StubLogger, _StubLogger]:
    human_logger = _StubLogger()
    machine_logger = _StubLogger()
    monkeypatch.setattr(exec_utils.logging_ext, "get_human_logger", lambda: human_logger)
    monkeypatch.setattr(exec_utils.logging_ext, "get_machine_logger", lambda: machine_logger)
    return human_logger, machine_logger


@pytest.fixture(autouse=True)
def _reset_global_timeout():
    yield
    exec_utils.set_global_timeout(None)


def test_sanitize_environment_strips_blocklist() -> None:
    """!
    @brief Ensure sanitisation removes Python-specific variables only.
    """

    base_env = {"PYTHONPATH": "should_remove", "VIRTUAL_ENV": "venv", "KEEP": "1", "LANG": "C"}

    sanitized = exec_utils.sanitize_environment(base_env)

    assert "PYTHONPATH" not in sanitized
    assert "VIRTUAL_ENV" not in sanitized
    assert sanitized == {"KEEP": "1", "LANG": "C"}


def test_run_command_spawns_with_sanitized_host_environment(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    seen: List[Dict[str, str]] = []

    def fake_run(command, **kwargs):
        seen.append(kwargs["env"])
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)
    monkeypatch.setenv("PYTHONPATH", "leak")
    monkeypatch.setenv("APPX_JANITOR_MARKER", "kept")

    exec_utils.run_command(["tool.exe"], event="env", timeout=1)

    assert "PYTHONPATH" not in seen[0]
    assert seen[0]["APPX_JANITOR_MARKER"] == "kept"


def test_run_command_logs_plan_and_result(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    """!
    @brief Successful commands emit ``*_plan`` and ``*_result`` machine events.
    """

    _human, machine_logger = loggers
    calls: List[Dict[str, object]] = []

    def fake_run(command, **kwargs):
        calls.append({"command": command, **kwargs})
        return subprocess.CompletedProcess(command, 0, stdout="ok\n", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(["tool.exe", "/x"], event="sample", timeout=5)

    assert result.succeeded
    assert result.stdout == "ok\n"
    assert calls[0]["command"] == ["tool.exe", "/x"]
    assert calls[0]["timeout"] == 5
    assert calls[0]["capture_output"] is True
    events = [record[1] for record in machine_logger.records]
    assert events == ["sample_plan", "sample_result"]
    assert machine_logger.records[1][2]["extra"]["return_code"] == 0


def test_run_command_reports_missing_executable(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    def fake_run(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)

    result = exec_utils.run_command(["missing.exe"], event="missing_tool", timeout=1)

    assert not result.succeeded
    assert result.returncode == 127
    assert result.error
    assert "could not be started" in exec_utils.summarize_output(result)


def test_run_command_kills_command_after_timeout(loggers) -> None:
    """!
    @brief A command exceeding its budget is reported as a timed-out failure promptly.
    """

    started = time.monotonic()
    result = exec_utils.run_command(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        event="slow",
        timeout=0.5,
    )
    elapsed = time.monotonic() - started

    assert result.timed_out
    assert not result.succeeded
    assert elapsed < 0.5 + 5.0
    assert "timed out" in exec_utils.summarize_output(result)


def test_cancelled_token_skips_spawn(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    _human, machine_logger = loggers

    def fake_run(*args: object, **kwargs: object) -> None:  # pragma: no cover - should not be called
        raise AssertionError("subprocess.run should not be invoked after cancellation")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)
    token = CancellationToken()
    token.cancel("user pressed cancel")

    outcome = exec_utils.CommandExecutor().run(["tool.exe"], event="skipped", timeout=1, cancel=token)

    assert not outcome.succeeded
    assert outcome.cancelled
    assert [record[1] for record in machine_logger.records] == ["skipped_cancelled"]


def test_global_timeout_caps_requested_timeout(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    seen: List[object] = []

    def fake_run(command, **kwargs):
        seen.append(kwargs["timeout"])
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(exec_utils.subprocess, "run", fake_run)
    exec_utils.set_global_timeout(3)

    exec_utils.run_command(["a.exe"], event="capped", timeout=30)
    exec_utils.run_command(["b.exe"], event="uncapped", timeout=1)
    exec_utils.run_command(["c.exe"], event="default", timeout=None)

    assert seen == [3.0, 1, 3.0]


def test_executor_honours_custom_success_codes(monkeypatch: pytest.MonkeyPatch, loggers) -> None:
    """!
    @brief Tools such as ``robocopy`` signal success with non-zero exit codes.
    """

    monkeypatch.setattr(
        exec_utils.subprocess,
        "run",
        lambda command, **kwargs: subprocess.CompletedProcess(command, 3, stdout="", stderr=""),
    )
    executor = exec_utils.CommandExecutor()

    assert executor.run(["robocopy.exe"], event="mirror", timeout=1, success_codes=range(8)).succeeded
    assert not executor.run(["robocopy.exe"], event="mirror", timeout=1).succeeded


def test_summarize_output_includes_stderr_on_failure() -> None:
    result = exec_utils.CommandResult(
        command=["C:\\Windows\\System32\\icacls.exe", "x"],
        returncode=5,
        stdout="",
        stderr="Access is denied.",
        duration=0.1,
    )

    assert exec_utils.summarize_output(result) == "icacls.exe exited with 5: Access is denied."
