"""!
@brief Data model for the package removal workflow.
@details Defines the immutable deletion target, the two reconciled facts, the
result value returned by every remediation strategy, the workflow phases, and
the exception hierarchy reserved for programming and usage errors. Expected failures
(access denied, timeouts, missing packages) never travel as exceptions; they
are carried by :class:`AttemptOutcome`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from . import constants

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class JanitorError(Exception):
    """!
    @brief Base class for unrecoverable AppX Janitor faults.
    """


class IntegrityViolation(JanitorError):
    """!
    @brief Raised when folder deletion is requested for a registered package.
    @details Deleting the payload of a package the package manager still lists
    leaves the package database pointing at nothing. The orchestrator never
    takes that path; reaching this exception means a caller bypassed the guard.
    """


class AmbiguousPackageName(JanitorError):
    """!
    @brief Raised when a package name fragment matches several packages.
    """

    def __init__(self, name: str, candidates: Sequence[str]) -> None:
        self.name = name
        self.candidates = tuple(candidates)
        super().__init__(f"{name} matches several packages: {', '.join(self.candidates)}")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RemovalVariant(Enum):
    """!
    @brief Argument variants for the package manager removal command.
    """

    STANDARD = "standard"  # current user
    ALL_USERS = "all_users"
    ALTERNATE_HOST = "alternate_host"  # Windows PowerShell 5.1
    DEVELOPMENT_MODE_DISABLED = "development_mode_disabled"


class EscalationLevel(Enum):
    """!
    @brief Permission escalation tiers.
    """

    STANDARD = "standard"
    ENHANCED = "enhanced"
    CLEANUP = "cleanup"  # folder reconciliation after unregistration


class DeletionPhase(Enum):
    """!
    @brief States visited by :class:`appx_janitor.orchestrator.DeletionOrchestrator`.
    """

    START = "start"
    ANALYZING = "analyzing"
    TERMINATING_PROCESSES = "terminating_processes"
    REMOVING_VIA_PACKAGE_MANAGER = "removing_via_package_manager"
    VERIFYING = "verifying"
    PARTIAL_SUCCESS_FOLDER_PERSISTS = "partial_success_folder_persists"
    PARTIAL_SUCCESS_ORPHANED_REGISTRATION = "partial_success_orphaned_registration"
    RECONCILING = "reconciling"
    COMPLETE_SUCCESS = "complete_success"
    RECOVERY_SUCCESS = "recovery_success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeletionOutcome(Enum):
    """!
    @brief Terminal outcome reported to the caller.
    """

    COMPLETE_SUCCESS = "complete_success"
    PARTIAL_SUCCESS = "partial_success"
    RECOVERY_SUCCESS = "recovery_success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def succeeded(self) -> bool:
        return self in {
            DeletionOutcome.COMPLETE_SUCCESS,
            DeletionOutcome.PARTIAL_SUCCESS,
            DeletionOutcome.RECOVERY_SUCCESS,
        }


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


def split_package_id(canonical_id: str) -> List[str]:
    """!
    @brief Split a package full name on the package name delimiter.
    """

    return canonical_id.split(constants.PACKAGE_NAME_DELIMITER)


def base_name_of(canonical_id: str) -> str:
    """!
    @brief Substring before the first delimiter, e.g. ``Microsoft.ZuneMusic``.
    """

    return split_package_id(canonical_id)[0]


def family_name_of(canonical_id: str) -> str:
    """!
    @brief Package family name (``<name>_<publisher id>``) or ``""``.
    @details Family names are built from the first and last delimiter-separated
    segments of the full name; identifiers without a publisher segment yield an
    empty string.
    """

    parts = split_package_id(canonical_id)
    if len(parts) < 2 or not parts[-1]:
        return ""
    return f"{parts[0]}{constants.PACKAGE_NAME_DELIMITER}{parts[-1]}"


@dataclass(frozen=True)
class PackageTarget:
    """!
    @brief Package selected for deletion.
    @details Constructed by the caller and borrowed by the orchestrator for the
    duration of one attempt. ``is_protected`` discourages deletion but never
    blocks it.
    """

    canonical_id: str
    display_name: str
    folder_path: str
    is_protected: bool = False
    is_system: bool = False

    @property
    def base_name(self) -> str:
        return base_name_of(self.canonical_id)

    @property
    def family_name(self) -> str:
        return family_name_of(self.canonical_id)

    @classmethod
    def from_canonical_id(
        cls,
        canonical_id: str,
        folder_path: str,
        *,
        display_name: str | None = None,
        publisher: str = "",
    ) -> "PackageTarget":
        """!
        @brief Build a target, classifying protected and system packages.
        @param canonical_id Package full name.
        @param folder_path Install location of the package payload.
        @param display_name Optional friendly name; defaults to the base name.
        @param publisher Publisher string used for the system-app heuristic.
        """

        lowered = canonical_id.lower()
        is_protected = any(
            lowered.startswith(prefix.lower()) for prefix in constants.PROTECTED_PACKAGE_PREFIXES
        )
        is_system = lowered.startswith("microsoft.") or any(
            pub.lower() in publisher.lower() for pub in constants.SYSTEM_PUBLISHERS
        )
        return cls(
            canonical_id=canonical_id,
            display_name=display_name or base_name_of(canonical_id) or "Unknown App",
            folder_path=folder_path,
            is_protected=is_protected,
            is_system=is_system,
        )


@dataclass(frozen=True)
class ReconciliationState:
    """!
    @brief Freshly observed ``(registered, folder_exists)`` pair.
    """

    registered: bool
    folder_exists: bool

    @property
    def removed(self) -> bool:
        return not self.registered and not self.folder_exists

    def describe(self) -> str:
        return (
            f"registered={'yes' if self.registered else 'no'}, "
            f"folder={'present' if self.folder_exists else 'absent'}"
        )


@dataclass(frozen=True)
class AttemptOutcome:
    """!
    @brief Result of a single remediation strategy or external command.
    """

    succeeded: bool
    diagnostic: str = ""
    timed_out: bool = False
    cancelled: bool = False

    def __bool__(self) -> bool:
        return self.succeeded

    @classmethod
    def ok(cls, diagnostic: str = "") -> "AttemptOutcome":
        return cls(True, diagnostic)

    @classmethod
    def failed(cls, diagnostic: str = "") -> "AttemptOutcome":
        return cls(False, diagnostic)


@dataclass
class FolderDeletionReport:
    """!
    @brief Outcome of :meth:`appx_janitor.fs_tools.FolderReconciler.force_delete`.
    @details ``soft_success`` is set when every strategy failed but the share
    of removed files exceeded the configured threshold; the remainder is
    usually cleared on the next reboot.
    """

    path: str
    removed: bool = False
    soft_success: bool = False
    files_before: int = 0
    files_after: int = 0
    attempts: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.removed

    @property
    def acceptable(self) -> bool:
        return self.removed or self.soft_success


@dataclass
class DeletionResult:
    """!
    @brief Terminal result of one orchestrated deletion.
    """

    target: PackageTarget
    outcome: DeletionOutcome
    final_state: Optional[ReconciliationState] = None
    narrative: List[str] = field(default_factory=list)
    phases: List[DeletionPhase] = field(default_factory=list)
    suggestions: Tuple[str, ...] = ()
    removal_attempts: int = 0
    folder_strategy_attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded
