"""!
@brief Filesystem helpers for package payload cleanup.
@details Hosts the folder reconciler that removes a package folder once the
package manager no longer lists the package, plus log directory defaults. The
reconciler walks through progressively blunter strategies and re-checks
existence after each one, since a tool can report failure after removing
everything or success while leaving the folder behind.
"""
from __future__ import annotations

import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Callable, List, Mapping, Tuple

from . import constants, logging_ext
from .cancellation import NEVER_CANCELLED, CancellationToken
from .exec_utils import CommandExecutor
from .models import AttemptOutcome, EscalationLevel, FolderDeletionReport
from .permissions import PermissionEscalator

__all__ = [
    "FolderReconciler",
    "count_files",
    "get_default_log_directory",
]

_ROBOCOPY_SUCCESS_CODES = tuple(range(8))


def get_default_log_directory(
    *,
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> Path:
    """!
    @brief Resolve the default log directory.
    @details ``APPX_JANITOR_LOGDIR`` wins; Windows then uses
    ``%ProgramData%\\AppXJanitor\\logs`` and other platforms
    ``$XDG_STATE_HOME/appx-janitor/logs``.
    """

    environment = os.environ if env is None else env
    override = environment.get("APPX_JANITOR_LOGDIR")
    if override:
        return Path(override)

    if (platform or os.name) == "nt":
        base = environment.get("ProgramData") or environment.get("PROGRAMDATA") or r"C:\ProgramData"
        return Path(base) / "AppXJanitor" / "logs"

    state_home = environment.get("XDG_STATE_HOME")
    if state_home:
        return Path(state_home) / "appx-janitor" / "logs"
    return Path.home() / ".local" / "state" / "appx-janitor" / "logs"


def count_files(path: str | os.PathLike[str]) -> int:
    """!
    @brief Count regular files below ``path``; unreadable branches are skipped.
    """

    total = 0
    for _root, _dirs, files in os.walk(path):
        total += len(files)
    return total


def _handle_readonly(function, path: str, exc_info) -> None:  # pragma: no cover - Windows attribute path
    """!
    @brief Clear read-only attributes before retrying removal.
    """

    if isinstance(exc_info[1], PermissionError):
        os.chmod(path, stat.S_IWRITE)
        function(path)
    else:
        raise exc_info[1]


def _clear_readonly(path: str) -> None:
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            entry = os.path.join(root, name)
            try:
                os.chmod(entry, os.lstat(entry).st_mode | stat.S_IWRITE)
            except OSError:
                continue


class FolderReconciler:
    """!
    @brief Delete a package folder that the package manager left behind.
    @param executor Command executor for ``cmd`` and ``robocopy``.
    @param escalator Permission escalator run with the cleanup tier first.
    @param partial_clear_threshold Fraction of files that must be gone for an
    incomplete deletion to count as a soft success.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        escalator: PermissionEscalator | None = None,
        *,
        partial_clear_threshold: float = 0.5,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._escalator = escalator or PermissionEscalator(self._executor)
        self._threshold = partial_clear_threshold

    def strategies(self) -> List[Tuple[str, Callable[[str, CancellationToken], AttemptOutcome]]]:
        return [
            ("python_rmtree", self._remove_with_python),
            ("cmd_rmdir", self._remove_with_rmdir),
            ("robocopy_mirror", self._remove_with_robocopy),
        ]

    def force_delete(
        self,
        path: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> FolderDeletionReport:
        """!
        @brief Remove ``path`` with escalating strategies.
        @returns Report whose truthiness says whether the folder is gone.
        """

        human_logger = logging_ext.get_human_logger()
        machine_logger = logging_ext.get_machine_logger()
        token = cancel or NEVER_CANCELLED
        report = FolderDeletionReport(path=path)

        if not os.path.exists(path):
            report.removed = True
            return report

        report.files_before = count_files(path)
        human_logger.info("Removing leftover folder %s (%d files)", path, report.files_before)
        self._escalator.escalate(path, EscalationLevel.CLEANUP, cancel=token)

        for name, strategy in self.strategies():
            if token.cancelled:
                break
            report.attempts.append(name)
            outcome = strategy(path, token)
            gone = not os.path.exists(path)
            machine_logger.info(
                "folder_strategy_result",
                extra=logging_ext.build_event_extra(
                    "folder_strategy_result",
                    path=path,
                    strategy=name,
                    succeeded=outcome.succeeded,
                    folder_removed=gone,
                    diagnostic=outcome.diagnostic,
                ),
            )
            if gone:
                report.removed = True
                human_logger.info("Folder %s removed via %s", path, name)
                return report
            human_logger.info("Folder strategy %s left %s in place: %s", name, path, outcome.diagnostic)

        report.files_after = count_files(path)
        if report.files_before > 0:
            cleared = (report.files_before - report.files_after) / report.files_before
            report.soft_success = cleared > self._threshold
        if report.soft_success:
            human_logger.warning(
                "Folder %s partially removed (%d of %d files); the rest clears after a reboot",
                path,
                report.files_before - report.files_after,
                report.files_before,
            )
        else:
            human_logger.error("Could not remove folder %s", path)
        return report

    def _remove_with_python(self, path: str, token: CancellationToken) -> AttemptOutcome:
        try:
            _clear_readonly(path)
            shutil.rmtree(path, onerror=_handle_readonly)
        except OSError as exc:
            return AttemptOutcome.failed(f"rmtree failed: {exc}")
        return AttemptOutcome.ok("rmtree completed")

    def _remove_with_rmdir(self, path: str, token: CancellationToken) -> AttemptOutcome:
        return self._executor.run(
            [constants.CMD_EXE, "/c", "rmdir", "/s", "/q", path],
            event="folder_rmdir",
            timeout=constants.COMMAND_TIMEOUTS["rmdir"],
            cancel=token,
        )

    def _remove_with_robocopy(self, path: str, token: CancellationToken) -> AttemptOutcome:
        empty = tempfile.mkdtemp(prefix="appx-janitor-empty-")
        try:
            outcome = self._executor.run(
                [constants.ROBOCOPY_EXE, empty, path, "/MIR", "/R:1", "/W:1", "/NFL", "/NDL", "/NJH", "/NJS"],
                event="folder_robocopy",
                timeout=constants.COMMAND_TIMEOUTS["robocopy"],
                cancel=token,
                success_codes=_ROBOCOPY_SUCCESS_CODES,
            )
            if outcome.succeeded:
                try:
                    os.rmdir(path)
                except OSError as exc:
                    return AttemptOutcome.failed(f"mirror emptied folder but removal failed: {exc}")
            return outcome
        finally:
            shutil.rmtree(empty, ignore_errors=True)
