"""!
@brief Process reconciliation before package removal.
@details Running processes that belong to a package keep its payload files
open and make the package manager refuse the removal. The reconciler finds
them by executable name or by executable location, asks them to close through
``taskkill`` (without ``/F``), waits briefly, and force-kills the rest with
:mod:`psutil`.
"""
from __future__ import annotations

import ntpath
import os
from typing import Callable, List, Optional

import psutil

from . import constants, logging_ext
from .cancellation import NEVER_CANCELLED, CancellationToken
from .exec_utils import CommandExecutor
from .models import PackageTarget

__all__ = ["ProcessReconciler", "is_related_process"]


def _normalise_dir(path: str) -> str:
    return os.path.normcase(os.path.normpath(path)).rstrip("\\/") + os.sep


def _name_keys(target: PackageTarget) -> List[str]:
    keys = [target.base_name]
    if target.folder_path:
        keys.append(ntpath.basename(target.folder_path.rstrip("\\/")))
    return [key.lower() for key in keys if len(key) >= constants.MINIMUM_PROCESS_MATCH_LENGTH]


def is_related_process(name: str | None, exe: str | None, target: PackageTarget) -> bool:
    """!
    @brief Decide whether a process belongs to ``target``.
    @details A process is related when its image name contains the package
    base name (``Microsoft.WindowsCalculator``) or the package folder name,
    case-insensitively, or when its executable lives under the package folder.
    """

    if name:
        lowered = name.lower()
        if any(key in lowered for key in _name_keys(target)):
            return True
    if exe and target.folder_path:
        folder = _normalise_dir(target.folder_path)
        if os.path.normcase(os.path.normpath(exe)).startswith(folder):
            return True
    return False


class ProcessReconciler:
    """!
    @brief Terminate processes that hold a package's files open.
    @param executor Command executor used for the graceful ``taskkill`` request.
    @param grace_period Seconds to wait for graceful exit before force-killing.
    @param process_iter Enumeration hook; defaults to :func:`psutil.process_iter`.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        grace_period: float = 2.0,
        process_iter: Optional[Callable[..., object]] = None,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._grace_period = grace_period
        self._process_iter = process_iter or psutil.process_iter

    def find_related(self, target: PackageTarget) -> List[psutil.Process]:
        """!
        @brief Enumerate running processes related to ``target``.
        @details Raises :class:`psutil.Error` only when enumeration as a whole
        fails; processes that vanish or deny access mid-scan are skipped.
        """

        related: List[psutil.Process] = []
        for proc in self._process_iter(["pid", "name", "exe"]):
            try:
                info = proc.info
                if is_related_process(info.get("name"), info.get("exe"), target):
                    related.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return related

    def terminate_related(
        self,
        target: PackageTarget,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """!
        @brief Close every process related to ``target``.
        @returns ``False`` only when the process table could not be enumerated.
        """

        human_logger = logging_ext.get_human_logger()
        machine_logger = logging_ext.get_machine_logger()
        token = cancel or NEVER_CANCELLED

        try:
            processes = self.find_related(target)
        except (psutil.Error, OSError) as exc:
            human_logger.warning("Could not enumerate processes: %s", exc)
            machine_logger.warning(
                "process_enumeration_failed",
                extra=logging_ext.build_event_extra(
                    "process_enumeration_failed", package=target.canonical_id, error=str(exc)
                ),
            )
            return False

        if not processes:
            human_logger.debug("No running processes found for %s", target.display_name)
            return True

        human_logger.info("Closing %d process(es) for %s", len(processes), target.display_name)
        for proc in processes:
            if token.cancelled:
                break
            machine_logger.info(
                "terminate_process_plan",
                extra=logging_ext.build_event_extra(
                    "terminate_process_plan",
                    package=target.canonical_id,
                    pid=proc.pid,
                    process_name=_safe_name(proc),
                ),
            )
            self._executor.run(
                [constants.TASKKILL_EXE, "/PID", str(proc.pid), "/T"],
                event="terminate_process",
                timeout=constants.COMMAND_TIMEOUTS["taskkill"],
                cancel=token,
            )

        try:
            _gone, alive = psutil.wait_procs(processes, timeout=self._grace_period)
        except psutil.Error as exc:
            human_logger.debug("Waiting for processes failed: %s", exc)
            alive = processes

        for proc in alive:
            try:
                proc.kill()
                human_logger.info("Force killed %s (PID %d)", _safe_name(proc), proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                human_logger.debug("Could not kill PID %d: %s", proc.pid, exc)
                continue
            machine_logger.info(
                "terminate_process_killed",
                extra=logging_ext.build_event_extra(
                    "terminate_process_killed", package=target.canonical_id, pid=proc.pid
                ),
            )
        return True


def _safe_name(proc: psutil.Process) -> str:
    try:
        return proc.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return f"pid {proc.pid}"
