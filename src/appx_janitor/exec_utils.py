"""!
@brief Subprocess execution helpers with sanitised environments.
@details Centralises invocation of :func:`subprocess.run` so the gateway, the
permission escalator, and the folder reconciler inherit consistent logging,
timeout handling, and environment hygiene. :func:`run_command` never raises
for expected failures: missing executables, access-denied spawn errors, and
timeouts are all folded into the returned :class:`CommandResult`, which
:class:`CommandExecutor` converts into an :class:`AttemptOutcome`.
"""

from __future__ import annotations

import ntpath
import os
import subprocess
import time
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any

from . import logging_ext
from .cancellation import NEVER_CANCELLED, CancellationToken
from .models import AttemptOutcome

_SANITIZE_BLOCKLIST = {
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONWARNINGS",
    "VIRTUAL_ENV",
    "PIP_REQUIRE_VIRTUALENV",
    "CONDA_PREFIX",
    "CONDA_DEFAULT_ENV",
    "PYENV_VERSION",
    "POETRY_ACTIVE",
    "__PYVENV_LAUNCHER__",
}

_CREATE_NO_WINDOW = 0x08000000
_DIAGNOSTIC_LIMIT = 500


@dataclass
class CommandResult:
    """!
    @brief Outcome information from :func:`run_command`.
    @details Encapsulates the executed command, captured output streams,
    duration, and metadata describing timeout, cancellation, or spawn errors.
    """

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled and self.error is None


_GLOBAL_TIMEOUT: float | None = None


def set_global_timeout(timeout_seconds: float | int | None) -> None:
    """!
    @brief Apply a global timeout cap for all subprocess calls.
    @details When set, :func:`run_command` uses the minimum of the caller
    supplied timeout and this global limit so the CLI ``--timeout`` flag can
    enforce per-command ceilings.
    """

    global _GLOBAL_TIMEOUT
    if timeout_seconds is None:
        _GLOBAL_TIMEOUT = None
        return
    try:
        parsed = float(timeout_seconds)
    except (TypeError, ValueError):
        _GLOBAL_TIMEOUT = None
    else:
        _GLOBAL_TIMEOUT = parsed if parsed > 0 else None


def _resolve_timeout(requested: float | int | None) -> float | int | None:
    if _GLOBAL_TIMEOUT is None:
        return requested
    if requested is None:
        return _GLOBAL_TIMEOUT
    return min(_GLOBAL_TIMEOUT, requested)


def _build_call_payload(
    command_list: Sequence[str],
    *,
    timeout: float | int | None,
    cwd: str | None,
) -> MutableMapping[str, object]:
    payload: MutableMapping[str, object] = {
        "command": list(command_list),
        "timeout": timeout,
    }
    if cwd:
        payload["cwd"] = cwd
    return payload


def _build_result_payload(
    *,
    return_code: int,
    duration: float,
    stdout: str,
    stderr: str,
    error: str | None = None,
    timed_out: bool = False,
) -> dict[str, object]:
    return {
        "rc": return_code,
        "duration_ms": round(duration * 1000, 3),
        "stdout": stdout,
        "stderr": stderr,
        "error": error,
        "timed_out": timed_out,
    }


def sanitize_environment(base_env: Mapping[str, str] | None = None) -> MutableMapping[str, str]:
    """!
    @brief Produce a subprocess environment stripped of virtualenv artefacts.
    @param base_env Source mapping; the host environment when ``None``.
    @returns Mutable mapping ready for subprocess invocation.
    """

    source = os.environ if base_env is None else base_env
    environment: MutableMapping[str, str] = {
        str(k): str(v) for k, v in source.items() if v is not None
    }
    for key in _SANITIZE_BLOCKLIST:
        environment.pop(key, None)
    return environment


def _creation_flags() -> int:
    return _CREATE_NO_WINDOW if os.name == "nt" else 0


def run_command(
    command: Sequence[str] | str,
    *,
    event: str,
    timeout: int | float | None = None,
    cwd: str | None = None,
    cancel: CancellationToken | None = None,
) -> CommandResult:
    """!
    @brief Execute ``command`` with consistent logging and environment hygiene.
    @details Emits ``*_plan`` and ``*_result`` machine-log events (or
    ``*_timeout``/``*_missing``/``*_error``/``*_cancelled``). On timeout
    :func:`subprocess.run` kills the child before the result is returned. The
    cancellation token is consulted once, before the process is spawned.
    @param command Sequence of command arguments.
    @param event Base name for structured log events.
    @param timeout Optional timeout (seconds), capped by the global ceiling.
    @param cwd Working directory supplied to :func:`subprocess.run`.
    @param cancel Cooperative cancellation token.
    @returns :class:`CommandResult` describing the observed outcome.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    if isinstance(command, str):
        command_list = [command]
    else:
        command_list = [str(part) for part in command]

    effective_timeout: Any = _resolve_timeout(timeout)
    call_payload = _build_call_payload(command_list, timeout=effective_timeout, cwd=cwd)

    token = cancel or NEVER_CANCELLED
    if token.cancelled:
        human_logger.info("Skipping %s: %s", command_list[0], token.reason or "cancelled")
        machine_logger.info(
            f"{event}_cancelled",
            extra={"event": f"{event}_cancelled", "call": dict(call_payload)},
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout="",
            stderr="",
            duration=0.0,
            cancelled=True,
            error="cancelled",
        )

    machine_logger.info(f"{event}_plan", extra={"event": f"{event}_plan", "call": dict(call_payload)})

    sanitized_env = sanitize_environment()

    start = time.monotonic()
    try:
        completed = subprocess.run(  # noqa: S603 - intentional command execution
            command_list,
            capture_output=True,
            text=True,
            timeout=effective_timeout,
            check=False,
            env=sanitized_env,
            cwd=cwd,
            creationflags=_creation_flags(),
        )
    except FileNotFoundError as exc:
        duration = time.monotonic() - start
        human_logger.error("Command not found: %s", command_list[0])
        machine_logger.error(
            f"{event}_missing",
            extra={
                "event": f"{event}_missing",
                "call": dict(call_payload),
                "result": _build_result_payload(
                    return_code=127,
                    duration=duration,
                    stdout="",
                    stderr="",
                    error=str(exc),
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=127,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )
    except subprocess.TimeoutExpired as exc:
        duration = time.monotonic() - start
        stdout = _decode_partial(exc.stdout)
        stderr = _decode_partial(exc.stderr)
        human_logger.error("Command timed out after %.1fs: %s", duration, command_list[0])
        machine_logger.error(
            f"{event}_timeout",
            extra={
                "event": f"{event}_timeout",
                "call": dict(call_payload),
                "result": _build_result_payload(
                    return_code=1,
                    duration=duration,
                    stdout=stdout,
                    stderr=stderr,
                    error="timeout",
                    timed_out=True,
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            timed_out=True,
            error="timeout",
        )
    except OSError as exc:
        duration = time.monotonic() - start
        human_logger.error("Failed to execute %s: %s", command_list[0], exc)
        machine_logger.error(
            f"{event}_error",
            extra={
                "event": f"{event}_error",
                "call": dict(call_payload),
                "result": _build_result_payload(
                    return_code=1,
                    duration=duration,
                    stdout="",
                    stderr="",
                    error=str(exc),
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )

    duration = time.monotonic() - start
    stdout = str(completed.stdout or "")
    stderr = str(completed.stderr or "")
    machine_logger.info(
        f"{event}_result",
        extra={
            "event": f"{event}_result",
            "call": dict(call_payload),
            "return_code": completed.returncode,
            "result": _build_result_payload(
                return_code=completed.returncode,
                duration=duration,
                stdout=stdout,
                stderr=stderr,
            ),
        },
    )

    if completed.returncode != 0:
        human_logger.warning("Command %s exited with %s", command_list[0], completed.returncode)

    return CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=stdout,
        stderr=stderr,
        duration=duration,
    )


def _decode_partial(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def summarize_output(result: CommandResult, *, limit: int = _DIAGNOSTIC_LIMIT) -> str:
    """!
    @brief Condense a command result into a single narrative line.
    """

    name = ntpath.basename(result.command[0]) if result.command else "command"
    if result.cancelled:
        return f"{name} skipped: cancelled"
    if result.timed_out:
        return f"{name} timed out after {result.duration:.1f}s"
    if result.error is not None:
        return f"{name} could not be started: {result.error}"

    text = (result.stdout or "").strip()
    error_text = (result.stderr or "").strip()
    if result.returncode != 0 and error_text:
        text = f"{text}\n{error_text}".strip() if text else error_text
    if len(text) > limit:
        text = text[:limit].rstrip() + "..."
    status = "succeeded" if result.returncode == 0 else f"exited with {result.returncode}"
    return f"{name} {status}: {text}" if text else f"{name} {status}"


class CommandExecutor:
    """!
    @brief Shell command executor returning :class:`AttemptOutcome` values.
    @details Thin object wrapper around :func:`run_command` so collaborators can
    be handed a stub in tests. ``success_codes`` lets tools with unusual exit
    code conventions (``robocopy``) declare which codes mean success.
    """

    def run(
        self,
        command: Sequence[str],
        *,
        event: str,
        timeout: float | None,
        cancel: CancellationToken | None = None,
        cwd: str | None = None,
        success_codes: Iterable[int] = (0,),
    ) -> AttemptOutcome:
        result = self.execute(command, event=event, timeout=timeout, cancel=cancel, cwd=cwd)
        return outcome_from_result(result, success_codes=success_codes)

    def execute(
        self,
        command: Sequence[str],
        *,
        event: str,
        timeout: float | None,
        cancel: CancellationToken | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        return run_command(command, event=event, timeout=timeout, cancel=cancel, cwd=cwd)


def outcome_from_result(
    result: CommandResult,
    *,
    success_codes: Iterable[int] = (0,),
) -> AttemptOutcome:
    """!
    @brief Convert a :class:`CommandResult` into an :class:`AttemptOutcome`.
    """

    codes = set(success_codes)
    succeeded = (
        result.returncode in codes
        and not result.timed_out
        and not result.cancelled
        and result.error is None
    )
    return AttemptOutcome(
        succeeded=succeeded,
        diagnostic=summarize_output(result),
        timed_out=result.timed_out,
        cancelled=result.cancelled,
    )
