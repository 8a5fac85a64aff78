"""!
@brief Pre-deletion feasibility checks and post-deletion residue report.
@details The findings only feed the progress narrative and ``--diagnose``
output. Nothing here blocks a deletion or mutates the system.
"""
from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import List, Mapping

import psutil

from . import constants
from .appx_gateway import PackageManagerGateway
from .cancellation import CancellationToken
from .models import PackageTarget
from .processes import ProcessReconciler

__all__ = ["analyze", "deletion_warning", "find_residue", "is_critical_component"]


def is_critical_component(target: PackageTarget) -> bool:
    lowered = target.canonical_id.lower()
    return any(lowered.startswith(prefix.lower()) for prefix in constants.CRITICAL_PACKAGE_PREFIXES)


def _folder_is_writable(path: str) -> bool:
    probe = os.path.join(path, f".appx-janitor-probe-{uuid.uuid4().hex}")
    try:
        with open(probe, "w", encoding="utf-8") as handle:
            handle.write("probe")
        os.remove(probe)
    except OSError:
        return False
    return True


def analyze(
    target: PackageTarget,
    gateway: PackageManagerGateway,
    reconciler: ProcessReconciler,
    *,
    cancel: CancellationToken | None = None,
) -> List[str]:
    """!
    @brief Collect reasons a deletion may struggle.
    @param cancel Passed to the package manager queries so a cancelled run
    skips them.
    @returns Human-readable issues, empty when nothing stands out.
    """

    issues: List[str] = []

    try:
        running = reconciler.find_related(target)
    except (psutil.Error, OSError):
        issues.append("Could not inspect running processes")
        running = []
    if running:
        issues.append(f"{len(running)} related process(es) are running and will be closed")

    if not target.folder_path or not os.path.isdir(target.folder_path):
        issues.append("Package folder does not exist")
    elif not _folder_is_writable(target.folder_path):
        issues.append("Package folder is not writable; ownership will be taken")

    if target.is_protected:
        issues.append("Package is marked as protected")
    if target.is_system:
        issues.append("Package is a system app and Windows may reinstall it")
    if is_critical_component(target):
        issues.append("Package looks like a critical Windows component")

    if not gateway.is_registered(target.canonical_id, cancel=cancel):
        issues.append("Package is not visible to the package manager")
    else:
        dependents = gateway.list_dependents(target.canonical_id, cancel=cancel)
        if dependents:
            issues.append(f"{len(dependents)} installed package(s) depend on it: {', '.join(dependents[:3])}")

    return issues


def deletion_warning(target: PackageTarget) -> str | None:
    """!
    @brief One-line caution for protected or system packages.
    """

    if target.is_protected:
        return (
            f"WARNING: {target.display_name} is a protected system component. "
            "Removing it may break Windows features."
        )
    if target.is_system:
        return (
            f"WARNING: {target.display_name} is a system app. "
            "Windows Update may reinstall it and some features may stop working."
        )
    return None


def find_residue(target: PackageTarget, env: Mapping[str, str] | None = None) -> List[Path]:
    """!
    @brief Per-user data locations that outlive the package.
    """

    environment = os.environ if env is None else env
    local_app_data = environment.get("LOCALAPPDATA")
    if not local_app_data:
        return []

    candidates = []
    if target.family_name:
        candidates.append(Path(local_app_data) / "Packages" / target.family_name)
    candidates.append(Path(local_app_data) / "Microsoft" / "Windows" / "Caches" / target.canonical_id)
    return [candidate for candidate in candidates if candidate.exists()]
