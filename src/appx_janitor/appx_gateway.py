"""!
@file appx_gateway.py
@brief Package manager gateway for AppX/MSIX packages.
@details Wraps the PowerShell AppX cmdlets and DISM behind verb-level
operations: registration queries, canonical name resolution, removal
variants, provisioned package removal, low-level DISM cleanup, and cache
reset. Every call goes through :class:`appx_janitor.exec_utils.CommandExecutor`
so timeouts and spawn failures surface as failed outcomes rather than
exceptions.
"""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

from . import constants, logging_ext
from .exec_utils import CommandExecutor, CommandResult, outcome_from_result, summarize_output
from .models import (
    AmbiguousPackageName,
    AttemptOutcome,
    RemovalVariant,
    base_name_of,
    family_name_of,
    split_package_id,
)

if TYPE_CHECKING:
    from .cancellation import CancellationToken

__all__ = [
    "PackageManagerGateway",
    "interpret_removal_output",
    "quote_ps",
]


def quote_ps(value: str) -> str:
    """!
    @brief Render ``value`` as a single-quoted PowerShell string literal.
    """

    return "'" + value.replace("'", "''") + "'"


def _wrap_with_marker(command: str) -> str:
    """!
    @brief Turn thrown cmdlet errors into output text.
    @details The wrapped script prints :data:`constants.SUCCESS_MARKER` once
    the cmdlet returns, or the exception message when it throws.
    """

    return (
        f"try {{ {command}; Write-Output '{constants.SUCCESS_MARKER}' }} "
        f"catch {{ Write-Output $_.Exception.Message }}"
    )


def interpret_removal_output(result: CommandResult, *, strict: bool = False) -> AttemptOutcome:
    """!
    @brief Decide whether a wrapped removal command succeeded.
    @details Timeouts, cancellations, and spawn errors always fail. Otherwise
    the lenient policy accepts exit code ``0`` or the success marker; a failure
    message printed by the ``catch`` block is surfaced as the diagnostic but
    does not flip an exit-code-0 result to failure. With ``strict`` enabled the
    marker is required.
    """

    if result.timed_out or result.cancelled or result.error is not None:
        return outcome_from_result(result)

    lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
    marker_seen = constants.SUCCESS_MARKER in lines
    if strict:
        succeeded = marker_seen
    else:
        succeeded = result.returncode == 0 or marker_seen

    reported = [line for line in lines if line != constants.SUCCESS_MARKER]
    if marker_seen:
        diagnostic = "removal command reported success"
    elif reported:
        diagnostic = "removal command reported: " + " ".join(reported)[:500]
    else:
        diagnostic = summarize_output(result)
    return AttemptOutcome(succeeded=succeeded, diagnostic=diagnostic)


class PackageManagerGateway:
    """!
    @brief Verb-level access to the AppX package manager.
    @param executor Command executor; defaults to a fresh :class:`CommandExecutor`.
    @param strict_success_marker Require the success marker for removals.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        strict_success_marker: bool = False,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._strict = strict_success_marker

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _powershell(self, script: str, *, host: str = constants.POWERSHELL_EXE) -> list[str]:
        return [host, *constants.POWERSHELL_BASE_ARGS, script]

    def _exact_match_filter(self, canonical_id: str) -> str:
        base = base_name_of(canonical_id)
        return (
            f"Get-AppxPackage -Name {quote_ps('*' + base + '*')} -ErrorAction Stop | "
            f"Where-Object {{ $_.PackageFullName -eq {quote_ps(canonical_id)} }}"
        )

    def is_registered(self, canonical_id: str, *, cancel: CancellationToken | None = None) -> bool:
        """!
        @brief Report whether the package manager still lists ``canonical_id``.
        @details Queries by base name, then exact-matches the full name. Only a
        count of zero or empty output means not registered. A query that
        failed, timed out, was cancelled, or printed something other than a
        count is unverified and reported as still registered.
        """

        if not canonical_id:
            return False
        script = (
            f"try {{ {self._exact_match_filter(canonical_id)} | Measure-Object | "
            f"Select-Object -ExpandProperty Count }} catch {{ Write-Output $_.Exception.Message }}"
        )
        result = self._executor.execute(
            self._powershell(script),
            event="appx_query",
            timeout=constants.COMMAND_TIMEOUTS["query"],
            cancel=cancel,
        )
        human_logger = logging_ext.get_human_logger()
        if not result.succeeded:
            human_logger.warning(
                "Registration query for %s failed (%s); treating it as still registered",
                canonical_id,
                summarize_output(result),
            )
            return True
        for line in reversed((result.stdout or "").splitlines()):
            text = line.strip()
            if not text:
                continue
            try:
                return int(text) > 0
            except ValueError:
                human_logger.warning(
                    "Registration query for %s printed %r; treating it as still registered",
                    canonical_id,
                    text[:200],
                )
                return True
        return False

    def resolve_canonical_id(
        self,
        approximate_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> str:
        """!
        @brief Resolve ``approximate_id`` to the exact package full name.
        @returns The exact name, ``""`` when the package manager does not know
        the package (already removed), or ``approximate_id`` unchanged when the
        query itself could not run.
        """

        if not approximate_id:
            return ""
        script = (
            f"try {{ {self._exact_match_filter(approximate_id)} | "
            f"Select-Object -ExpandProperty PackageFullName }} catch {{ Write-Output $_.Exception.Message; exit 1 }}"
        )
        result = self._executor.execute(
            self._powershell(script),
            event="appx_resolve",
            timeout=constants.COMMAND_TIMEOUTS["resolve"],
            cancel=cancel,
        )
        if not result.succeeded:
            logging_ext.get_human_logger().warning(
                "Package name verification for %s failed (%s); using it unchanged",
                approximate_id,
                summarize_output(result),
            )
            return approximate_id
        for line in (result.stdout or "").splitlines():
            text = line.strip()
            if text:
                return text
        return ""

    def describe_package(
        self,
        package_name: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> dict[str, str] | None:
        """!
        @brief Get detailed info for a package by name or full name.
        @details The query matches ``*name*``. An exact full name wins, then an
        exact ``Name``, then a lone wildcard hit.
        @returns Mapping with ``Name``, ``PackageFullName``, ``InstallLocation``
        and ``Publisher`` keys, or ``None`` if not found.
        @raises AmbiguousPackageName when several packages match and none exactly.
        """

        pattern = base_name_of(package_name)
        script = (
            f"Get-AppxPackage -Name {quote_ps('*' + pattern + '*')} 2>$null | "
            f"Select-Object Name, PackageFullName, Version, InstallLocation, "
            f"Publisher, Architecture | ConvertTo-Json -Compress"
        )
        result = self._executor.execute(
            self._powershell(script),
            event="appx_describe",
            timeout=constants.COMMAND_TIMEOUTS["describe"],
            cancel=cancel,
        )
        if not result.succeeded or not result.stdout.strip():
            return None
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            logging_ext.get_human_logger().debug("Failed to parse AppX query result for %s", package_name)
            return None

        candidates = data if isinstance(data, list) else [data]
        candidates = [item for item in candidates if isinstance(item, dict)]
        for item in candidates:
            if item.get("PackageFullName") == package_name:
                return item
        for item in candidates:
            if str(item.get("Name", "")).lower() == pattern.lower():
                return item
        if len(candidates) > 1:
            raise AmbiguousPackageName(
                package_name, [str(item.get("PackageFullName") or item.get("Name")) for item in candidates]
            )
        return candidates[0] if candidates else None

    def list_dependents(
        self,
        canonical_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[str]:
        """!
        @brief Full names of installed packages that declare a dependency on ``canonical_id``.
        """

        script = (
            f"Get-AppxPackage 2>$null | Where-Object {{ $_.Dependencies.PackageFullName -contains "
            f"{quote_ps(canonical_id)} }} | Select-Object -ExpandProperty PackageFullName"
        )
        result = self._executor.execute(
            self._powershell(script),
            event="appx_dependents",
            timeout=constants.COMMAND_TIMEOUTS["dependents"],
            cancel=cancel,
        )
        if not result.succeeded:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def remove(
        self,
        canonical_id: str,
        variant: RemovalVariant,
        *,
        cancel: CancellationToken | None = None,
    ) -> AttemptOutcome:
        """!
        @brief Issue one removal command variant for ``canonical_id``.
        @details The orchestrator decides the order in which variants are tried.
        """

        package = quote_ps(canonical_id)
        host = constants.POWERSHELL_EXE
        if variant is RemovalVariant.STANDARD:
            cmdlet = f"Remove-AppxPackage -Package {package} -Confirm:$false -ErrorAction Stop"
            timeout = constants.COMMAND_TIMEOUTS["remove_standard"]
        elif variant is RemovalVariant.ALL_USERS:
            cmdlet = f"Remove-AppxPackage -Package {package} -AllUsers -Confirm:$false -ErrorAction Stop"
            timeout = constants.COMMAND_TIMEOUTS["remove_all_users"]
        elif variant is RemovalVariant.ALTERNATE_HOST:
            host = constants.windows_powershell_path()
            if not os.path.isfile(host):
                logging_ext.get_human_logger().info("Windows PowerShell 5.1 not found at %s", host)
                return AttemptOutcome.failed("Windows PowerShell 5.1 not found, variant skipped")
            cmdlet = f"Remove-AppxPackage -Package {package} -Confirm:$false -ErrorAction Stop"
            timeout = constants.COMMAND_TIMEOUTS["remove_alternate_host"]
        else:
            cmdlet = (
                f"Remove-AppxPackage -Package {package} -AllUsers -Confirm:$false "
                f"-DisableDevelopmentMode -ErrorAction Stop"
            )
            timeout = constants.COMMAND_TIMEOUTS["remove_dev_mode_disabled"]

        logging_ext.get_human_logger().info("Removing %s (%s)", canonical_id, variant.value)
        result = self._executor.execute(
            self._powershell(_wrap_with_marker(cmdlet), host=host),
            event=f"appx_remove_{variant.value}",
            timeout=timeout,
            cancel=cancel,
        )
        return interpret_removal_output(result, strict=self._strict)

    def remove_provisioned(
        self,
        canonical_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> AttemptOutcome:
        """!
        @brief Remove the install-for-future-users registration of the package family.
        """

        family = family_name_of(canonical_id)
        if not family:
            return AttemptOutcome.failed(f"{canonical_id} has no publisher segment; no family name")
        base = base_name_of(canonical_id)
        publisher_id = split_package_id(canonical_id)[-1]
        cmdlet = (
            f"Get-AppxProvisionedPackage -Online | Where-Object {{ $_.DisplayName -eq {quote_ps(base)} "
            f"-and $_.PackageName -like {quote_ps('*_' + publisher_id)} }} | ForEach-Object {{ "
            f"Remove-AppxProvisionedPackage -Online -PackageName $_.PackageName -ErrorAction Stop | Out-Null }}"
        )
        logging_ext.get_human_logger().info("Removing provisioned package family %s", family)
        result = self._executor.execute(
            self._powershell(_wrap_with_marker(cmdlet)),
            event="appx_remove_provisioned",
            timeout=constants.COMMAND_TIMEOUTS["remove_provisioned"],
            cancel=cancel,
        )
        return interpret_removal_output(result, strict=self._strict)

    def low_level_cleanup(
        self,
        canonical_id: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> AttemptOutcome:
        """!
        @brief Remove the provisioned package through DISM as a last resort.
        """

        timeout = max(30.0, float(constants.COMMAND_TIMEOUTS["dism_cleanup"]))
        logging_ext.get_human_logger().info("Running DISM cleanup for %s", canonical_id)
        return self._executor.run(
            [
                constants.DISM_EXE,
                "/Online",
                "/Remove-ProvisionedAppxPackage",
                f"/PackageName:{canonical_id}",
                "/NoRestart",
            ],
            event="dism_cleanup",
            timeout=timeout,
            cancel=cancel,
        )

    def reset_cache(self, *, cancel: CancellationToken | None = None) -> None:
        """!
        @brief Best-effort package cache invalidation; failures are logged only.
        """

        timeout = constants.COMMAND_TIMEOUTS["cache_reset"]
        commands = (
            ("appx_cache_reset", self._powershell("Get-AppxPackage | Reset-AppxPackage")),
            ("store_cache_reset", [constants.WSRESET_EXE, "/c"]),
        )
        for event, command in commands:
            outcome = self._executor.run(command, event=event, timeout=timeout, cancel=cancel)
            if not outcome.succeeded:
                logging_ext.get_human_logger().info("Cache reset step failed: %s", outcome.diagnostic)
