"""!
@brief Deletion workflow for a single AppX package.
@details :class:`DeletionOrchestrator` drives one package through analysis,
process termination, package manager removal, and verification, then branches
on the freshly observed ``(registered, folder_exists)`` pair:

- ``(False, False)``: the package is gone.
- ``(False, True)``: the registration is gone but files remain; the folder
  reconciler removes them.
- ``(True, False)``: an orphaned registration; provisioned and forced
  removals plus a cache reset are attempted.
- ``(True, True)``: reconciliation through cache reset, provisioned removal,
  and DISM; the first two are followed by the full escalation and removal
  pass again, and every tier ends with a registration check.

The payload folder is never force-deleted while the package manager still
lists the package; :func:`guarded_force_delete` enforces this by raising
:class:`IntegrityViolation`. Expected failures travel as
:class:`AttemptOutcome` values and end up in the narrative.
"""
from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from . import analysis, constants, logging_ext
from .appx_gateway import PackageManagerGateway
from .cancellation import NEVER_CANCELLED, CancellationToken
from .config import JanitorSettings
from .exec_utils import CommandExecutor
from .fs_tools import FolderReconciler
from .models import (
    DeletionOutcome,
    DeletionPhase,
    DeletionResult,
    EscalationLevel,
    FolderDeletionReport,
    IntegrityViolation,
    PackageTarget,
    ReconciliationState,
    RemovalVariant,
)
from .narrative import Narrative, ProgressSink
from .permissions import PermissionEscalator
from .processes import ProcessReconciler

__all__ = ["DeletionOrchestrator", "guarded_force_delete"]

_FIRST_PASS_VARIANTS = (RemovalVariant.STANDARD, RemovalVariant.ALL_USERS, RemovalVariant.ALTERNATE_HOST)
_ENHANCED_PASS_VARIANTS = (RemovalVariant.STANDARD, RemovalVariant.ALL_USERS)


class _WorkflowCancelled(Exception):
    """!
    @brief Unwinds the workflow to :meth:`DeletionOrchestrator.delete` on cancel.
    """


def guarded_force_delete(
    state: Optional[ReconciliationState],
    folders: FolderReconciler,
    path: str,
    *,
    cancel: CancellationToken | None = None,
) -> FolderDeletionReport:
    """!
    @brief Force-delete a package folder only once unregistration is verified.
    @raises IntegrityViolation when ``state`` is missing or still registered.
    """

    if state is None or state.registered:
        raise IntegrityViolation(f"Refusing to delete {path}: package registration still present")
    return folders.force_delete(path, cancel=cancel)


@dataclass
class _Run:
    target: PackageTarget
    package_id: str
    narrative: Narrative
    cancel: CancellationToken
    state: Optional[ReconciliationState] = None
    removal_attempts: int = 0
    folder_strategy_attempts: int = 0
    suggestions: List[str] = field(default_factory=list)


class DeletionOrchestrator:
    """!
    @brief Sequential deletion state machine.
    @param gateway Package manager gateway.
    @param processes Process reconciler.
    @param escalator Permission escalator.
    @param folders Folder reconciler.
    @param settings Runtime settings; defaults to :class:`JanitorSettings`.
    @param sleep Settle-delay hook; defaults to a cancellable wait.
    @param folder_exists Existence probe for package folders.
    """

    def __init__(
        self,
        gateway: PackageManagerGateway | None = None,
        processes: ProcessReconciler | None = None,
        escalator: PermissionEscalator | None = None,
        folders: FolderReconciler | None = None,
        *,
        settings: JanitorSettings | None = None,
        executor: CommandExecutor | None = None,
        sleep: Optional[Callable[[float], object]] = None,
        folder_exists: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.settings = settings or JanitorSettings()
        executor = executor or CommandExecutor()
        self.gateway = gateway or PackageManagerGateway(
            executor, strict_success_marker=self.settings.strict_success_marker
        )
        self.processes = processes or ProcessReconciler(
            executor, grace_period=self.settings.process_grace_period
        )
        self.escalator = escalator or PermissionEscalator(executor)
        self.folders = folders or FolderReconciler(
            executor,
            self.escalator,
            partial_clear_threshold=self.settings.partial_clear_threshold,
        )
        self._sleep = sleep
        self._folder_exists = folder_exists or os.path.exists

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def delete(
        self,
        target: PackageTarget,
        *,
        progress: Optional[ProgressSink] = None,
        cancel: CancellationToken | None = None,
    ) -> DeletionResult:
        """!
        @brief Remove ``target`` and report the terminal outcome.
        @details Never raises for expected failures; unexpected exceptions are
        logged and reported as :attr:`DeletionOutcome.FAILED`.
        :class:`IntegrityViolation` propagates as a programming error.
        """

        run = _Run(
            target=target,
            package_id=target.canonical_id,
            narrative=Narrative(target.canonical_id, progress),
            cancel=cancel or NEVER_CANCELLED,
        )
        human_logger = logging_ext.get_human_logger()
        try:
            outcome = self._run(run)
        except _WorkflowCancelled:
            run.narrative.phase(DeletionPhase.CANCELLED, run.cancel.reason or "cancelled")
            outcome = DeletionOutcome.CANCELLED
        except IntegrityViolation:
            raise
        except Exception as exc:  # noqa: BLE001 - reported as a failed deletion
            human_logger.exception("Unexpected error while deleting %s", target.canonical_id)
            run.narrative.say(f"Unexpected error: {exc}")
            run.narrative.phase(DeletionPhase.FAILED, "unexpected error")
            self._add_suggestions(run)
            outcome = DeletionOutcome.FAILED

        if outcome.succeeded:
            for leftover in analysis.find_residue(target):
                run.narrative.say(f"User data left behind at {leftover}")

        logging_ext.get_machine_logger().info(
            "deletion_complete",
            extra=logging_ext.build_event_extra(
                "deletion_complete",
                package=run.package_id,
                outcome=outcome.value,
                registered=run.state.registered if run.state else None,
                folder_exists=run.state.folder_exists if run.state else None,
                removal_attempts=run.removal_attempts,
                folder_strategy_attempts=run.folder_strategy_attempts,
            ),
        )
        return DeletionResult(
            target=target,
            outcome=outcome,
            final_state=run.state,
            narrative=list(run.narrative.lines),
            phases=list(run.narrative.phases),
            suggestions=tuple(run.suggestions),
            removal_attempts=run.removal_attempts,
            folder_strategy_attempts=run.folder_strategy_attempts,
        )

    def delete_many(
        self,
        targets: Sequence[PackageTarget],
        *,
        max_workers: int | None = None,
        progress: Optional[ProgressSink] = None,
        cancel: CancellationToken | None = None,
    ) -> List[DeletionResult]:
        """!
        @brief Delete several packages concurrently.
        @details Targets sharing a canonical id run one after another in the
        same worker; different packages run in parallel. Results keep the
        order of ``targets``.
        """

        groups: Dict[str, List[int]] = {}
        for index, target in enumerate(targets):
            groups.setdefault(target.canonical_id.lower(), []).append(index)

        results: List[Optional[DeletionResult]] = [None] * len(targets)
        lock = threading.Lock()

        def _worker(indices: List[int]) -> None:
            for index in indices:
                result = self.delete(targets[index], progress=progress, cancel=cancel)
                with lock:
                    results[index] = result

        workers = max_workers or self.settings.max_workers
        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(groups) or 1))) as pool:
            futures = [pool.submit(_worker, indices) for indices in groups.values()]
            for future in futures:
                future.result()
        return [result for result in results if result is not None]

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def _run(self, run: _Run) -> DeletionOutcome:
        narrative = run.narrative
        target = run.target

        narrative.phase(DeletionPhase.START, target.display_name)
        self._checkpoint(run)

        narrative.phase(DeletionPhase.ANALYZING)
        warning = analysis.deletion_warning(target)
        if warning:
            narrative.say(warning)
        for issue in analysis.analyze(target, self.gateway, self.processes, cancel=run.cancel):
            narrative.say(issue)
        self._checkpoint(run)

        narrative.phase(DeletionPhase.TERMINATING_PROCESSES)
        terminated = self.processes.terminate_related(target, cancel=run.cancel)
        narrative.attempt("close related processes", terminated)
        self._settle(run)

        narrative.phase(DeletionPhase.REMOVING_VIA_PACKAGE_MANAGER)
        resolved = self.gateway.resolve_canonical_id(target.canonical_id, cancel=run.cancel)
        self._checkpoint(run)
        if not resolved:
            narrative.say("Package is not registered; nothing to remove")
            run.state = ReconciliationState(
                registered=False,
                folder_exists=bool(target.folder_path) and self._folder_exists(target.folder_path),
            )
            narrative.phase(DeletionPhase.COMPLETE_SUCCESS, "package already removed")
            return DeletionOutcome.COMPLETE_SUCCESS
        if resolved != run.package_id:
            narrative.say(f"Using exact package name {resolved}")
            run.package_id = resolved

        self._remove_with_escalation(run)
        self._settle(run)
        return self._verify(run, recovered=False)

    def _remove_with_escalation(self, run: _Run) -> bool:
        self._escalate(run, EscalationLevel.STANDARD)
        if self._try_variants(run, _FIRST_PASS_VARIANTS):
            return True
        run.narrative.say("All removal variants failed; applying enhanced permission fixes")
        self._escalate(run, EscalationLevel.ENHANCED)
        return self._try_variants(run, _ENHANCED_PASS_VARIANTS)

    def _try_variants(self, run: _Run, variants: Sequence[RemovalVariant]) -> bool:
        for variant in variants:
            self._checkpoint(run)
            if self._remove(run, variant):
                return True
        return False

    def _remove(self, run: _Run, variant: RemovalVariant) -> bool:
        outcome = self.gateway.remove(run.package_id, variant, cancel=run.cancel)
        run.removal_attempts += 1
        run.narrative.attempt(f"remove package ({variant.value.replace('_', ' ')})", outcome, variant=variant.value)
        return outcome.succeeded

    def _escalate(self, run: _Run, level: EscalationLevel) -> None:
        path = run.target.folder_path
        if not path or not self._folder_exists(path):
            return
        self._checkpoint(run)
        succeeded = self.escalator.escalate(path, level, cancel=run.cancel)
        run.narrative.attempt(f"{level.value} permission fixes", succeeded, level=level.value)

    def _observe(self, run: _Run) -> ReconciliationState:
        self._checkpoint(run)
        registered = self.gateway.is_registered(run.package_id, cancel=run.cancel)
        self._checkpoint(run)
        path = run.target.folder_path
        folder_exists = bool(path) and self._folder_exists(path)
        run.state = ReconciliationState(registered=registered, folder_exists=folder_exists)
        return run.state

    def _verify(self, run: _Run, *, recovered: bool) -> DeletionOutcome:
        narrative = run.narrative
        state = self._observe(run)
        narrative.phase(DeletionPhase.VERIFYING, state.describe())

        if state.removed:
            return self._succeed(run, recovered)

        if not state.registered:
            narrative.phase(DeletionPhase.PARTIAL_SUCCESS_FOLDER_PERSISTS, run.target.folder_path)
            report = guarded_force_delete(run.state, self.folders, run.target.folder_path, cancel=run.cancel)
            run.folder_strategy_attempts += len(report.attempts)
            narrative.attempt(
                "remove leftover folder",
                report.acceptable,
                strategies=list(report.attempts),
                files_before=report.files_before,
                files_after=report.files_after,
            )
            self._checkpoint(run)
            run.state = ReconciliationState(
                registered=False, folder_exists=self._folder_exists(run.target.folder_path)
            )
            if report.acceptable:
                if report.soft_success:
                    narrative.say(
                        f"{report.files_after} of {report.files_before} files remain and should clear after a reboot"
                    )
                return self._succeed(run, recovered)
            narrative.say("Package is unregistered but its folder could not be removed; delete it after a reboot")
            return DeletionOutcome.PARTIAL_SUCCESS

        if not state.folder_exists:
            return self._repair_orphaned_registration(run, recovered)

        if recovered:
            narrative.say("Package registration reappeared after recovery")
            return self._fail(run)
        return self._reconcile(run)

    def _repair_orphaned_registration(self, run: _Run, recovered: bool) -> DeletionOutcome:
        narrative = run.narrative
        narrative.phase(DeletionPhase.PARTIAL_SUCCESS_ORPHANED_REGISTRATION)

        self._checkpoint(run)
        narrative.attempt("remove provisioned package", self.gateway.remove_provisioned(run.package_id, cancel=run.cancel))
        self._checkpoint(run)
        self._remove(run, RemovalVariant.DEVELOPMENT_MODE_DISABLED)
        self._checkpoint(run)
        self.gateway.reset_cache(cancel=run.cancel)
        narrative.say("Package cache reset requested")
        self._settle(run)

        state = self._observe(run)
        narrative.phase(DeletionPhase.VERIFYING, state.describe())
        if not state.registered:
            return self._succeed(run, recovered)
        return self._fail(run)

    def _reconcile(self, run: _Run) -> DeletionOutcome:
        narrative = run.narrative
        narrative.phase(DeletionPhase.RECONCILING, "folder kept while the package is registered")

        def _cache_reset_then_retry() -> None:
            self.gateway.reset_cache(cancel=run.cancel)
            narrative.say("Package cache reset requested")
            self._settle(run)
            self._remove_with_escalation(run)

        def _provisioned_then_retry() -> None:
            narrative.attempt(
                "remove provisioned package",
                self.gateway.remove_provisioned(run.package_id, cancel=run.cancel),
            )
            self._checkpoint(run)
            self._remove_with_escalation(run)

        def _low_level_cleanup() -> None:
            narrative.attempt(
                "DISM provisioned package cleanup",
                self.gateway.low_level_cleanup(run.package_id, cancel=run.cancel),
            )

        for tier in (_cache_reset_then_retry, _provisioned_then_retry, _low_level_cleanup):
            self._checkpoint(run)
            tier()
            self._settle(run)
            self._checkpoint(run)
            if not self.gateway.is_registered(run.package_id, cancel=run.cancel):
                self._checkpoint(run)
                narrative.say("Package registration removed during reconciliation")
                return self._verify(run, recovered=True)

        narrative.say("Package is still registered after every reconciliation step")
        return self._fail(run)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _succeed(self, run: _Run, recovered: bool) -> DeletionOutcome:
        if recovered:
            run.narrative.phase(DeletionPhase.RECOVERY_SUCCESS)
            return DeletionOutcome.RECOVERY_SUCCESS
        run.narrative.phase(DeletionPhase.COMPLETE_SUCCESS)
        return DeletionOutcome.COMPLETE_SUCCESS

    def _fail(self, run: _Run) -> DeletionOutcome:
        run.narrative.phase(DeletionPhase.FAILED, run.state.describe() if run.state else "")
        self._add_suggestions(run)
        return DeletionOutcome.FAILED

    def _add_suggestions(self, run: _Run) -> None:
        run.suggestions = list(constants.MANUAL_RECOVERY_SUGGESTIONS)
        for suggestion in run.suggestions:
            run.narrative.say(f"Suggestion: {suggestion}")

    def _checkpoint(self, run: _Run) -> None:
        if run.cancel.cancelled:
            raise _WorkflowCancelled(run.cancel.reason)

    def _settle(self, run: _Run) -> None:
        self._checkpoint(run)
        delay = self.settings.settle_delay
        if delay > 0:
            if self._sleep is not None:
                self._sleep(delay)
            else:
                run.cancel.wait(delay)
        self._checkpoint(run)
