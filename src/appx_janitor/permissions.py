"""!
@brief Ownership and ACL escalation for package folders.
@details ``WindowsApps`` payload folders are owned by ``TrustedInstaller`` and
deny writes to administrators. Each :class:`EscalationLevel` maps to an ordered
bundle of :class:`SubStrategy` entries; every sub-strategy holds alternative
command templates tried in order until one succeeds. The tier as a whole
succeeds when any sub-strategy succeeds.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Sequence, Tuple

from . import elevation, logging_ext
from .appx_gateway import quote_ps
from .cancellation import NEVER_CANCELLED, CancellationToken
from .exec_utils import CommandExecutor
from .models import EscalationLevel

__all__ = ["ESCALATION_TIERS", "PermissionEscalator", "SubStrategy"]

# Well-known SIDs keep the grants independent of the display language.
EVERYONE_SID = "*S-1-1-0"
ADMINISTRATORS_SID = "*S-1-5-32-544"

CommandTemplate = Tuple[str, ...]


@dataclass(frozen=True)
class SubStrategy:
    """!
    @brief One permission fix with alternative command forms.
    @details Placeholders ``{path}``, ``{user}``, ``{ps_path}`` and
    ``{ps_user}`` are substituted per argument; the ``ps_`` variants are
    quoted PowerShell literals.
    """

    name: str
    alternatives: Tuple[CommandTemplate, ...]
    timeout: float

    def render(self, values: Mapping[str, str]) -> Tuple[list[str], ...]:
        return tuple([part.format(**values) for part in template] for template in self.alternatives)


def _powershell(script: str) -> CommandTemplate:
    return ("powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script)


_SET_ACL_SCRIPT = (
    "$acl = Get-Acl -LiteralPath {ps_path}; "
    "$rule = New-Object System.Security.AccessControl.FileSystemAccessRule("
    "{ps_user}, 'FullControl', 'ContainerInherit,ObjectInherit', 'None', 'Allow'); "
    "$acl.SetAccessRule($rule); Set-Acl -LiteralPath {ps_path} -AclObject $acl"
)

_REWRITE_OWNER_SCRIPT = (
    "$owner = New-Object System.Security.Principal.NTAccount({ps_user}); "
    "$rule = New-Object System.Security.AccessControl.FileSystemAccessRule("
    "{ps_user}, 'FullControl', 'ContainerInherit,ObjectInherit', 'None', 'Allow'); "
    "$items = @(Get-Item -LiteralPath {ps_path} -Force) + "
    "@(Get-ChildItem -LiteralPath {ps_path} -Recurse -Force -ErrorAction SilentlyContinue); "
    "foreach ($item in $items) {{ try {{ $acl = Get-Acl -LiteralPath $item.FullName; "
    "$acl.SetOwner($owner); $acl.SetAccessRule($rule); "
    "Set-Acl -LiteralPath $item.FullName -AclObject $acl }} catch {{ }} }}"
)

ESCALATION_TIERS: Dict[EscalationLevel, Tuple[SubStrategy, ...]] = {
    EscalationLevel.STANDARD: (
        SubStrategy(
            "take_ownership",
            (("takeown.exe", "/f", "{path}", "/r", "/d", "y"),),
            60,
        ),
        SubStrategy(
            "grant_current_user",
            (("icacls.exe", "{path}", "/grant:r", "{user}:F", "/t", "/c", "/q"),),
            60,
        ),
        SubStrategy(
            "disable_inheritance",
            (("icacls.exe", "{path}", "/inheritance:d", "/grant:r", "{user}:F", "/t", "/c", "/q"),),
            60,
        ),
        SubStrategy("set_acl_full_control", (_powershell(_SET_ACL_SCRIPT),), 30),
    ),
    EscalationLevel.ENHANCED: (
        SubStrategy(
            "take_ownership",
            (
                ("takeown.exe", "/f", "{path}", "/r", "/d", "y"),
                ("takeown.exe", "/f", "{path}", "/a", "/r", "/d", "y"),
            ),
            90,
        ),
        SubStrategy("reset_acl", (("icacls.exe", "{path}", "/reset", "/t", "/c", "/q"),), 90),
        SubStrategy(
            "grant_everyone",
            (("icacls.exe", "{path}", "/grant", f"{EVERYONE_SID}:F", "/t", "/c", "/q"),),
            90,
        ),
        SubStrategy("rewrite_owner_and_acl", (_powershell(_REWRITE_OWNER_SCRIPT),), 120),
    ),
    EscalationLevel.CLEANUP: (
        SubStrategy(
            "take_ownership",
            (("takeown.exe", "/f", "{path}", "/r", "/d", "y"),),
            60,
        ),
        SubStrategy(
            "grant_current_user",
            (("icacls.exe", "{path}", "/grant", "{user}:F", "/t", "/c", "/q"),),
            60,
        ),
        SubStrategy(
            "grant_everyone",
            (("icacls.exe", "{path}", "/grant", f"{EVERYONE_SID}:F", "/t", "/c", "/q"),),
            60,
        ),
        SubStrategy(
            "grant_administrators",
            (("icacls.exe", "{path}", "/grant", f"{ADMINISTRATORS_SID}:F", "/t", "/c", "/q"),),
            60,
        ),
        SubStrategy("disable_inheritance", (("icacls.exe", "{path}", "/inheritance:d", "/c", "/q"),), 60),
    ),
}


class PermissionEscalator:
    """!
    @brief Apply an escalation tier to a folder.
    @param executor Command executor.
    @param username Principal granted full control; defaults to the current user.
    @param tiers Tier table, overridable for tests.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        username: str | None = None,
        tiers: Mapping[EscalationLevel, Sequence[SubStrategy]] | None = None,
    ) -> None:
        self._executor = executor or CommandExecutor()
        self._username = username
        self._tiers = tiers if tiers is not None else ESCALATION_TIERS

    @property
    def username(self) -> str:
        if self._username is None:
            self._username = elevation.qualified_username()
        return self._username

    def escalate(
        self,
        path: str,
        level: EscalationLevel,
        *,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """!
        @brief Run every sub-strategy of ``level`` against ``path``.
        @returns ``True`` when at least one sub-strategy succeeded; ``False``
        without running anything when ``path`` does not exist.
        """

        human_logger = logging_ext.get_human_logger()
        machine_logger = logging_ext.get_machine_logger()
        token = cancel or NEVER_CANCELLED

        if not path or not os.path.exists(path):
            human_logger.debug("Skipping %s escalation; %s does not exist", level.value, path)
            return False

        values = {
            "path": path,
            "user": self.username,
            "ps_path": quote_ps(path),
            "ps_user": quote_ps(self.username),
        }
        human_logger.info("Applying %s permission fixes to %s", level.value, path)

        any_succeeded = False
        for strategy in self._tiers.get(level, ()):
            if token.cancelled:
                break
            succeeded = False
            for command in strategy.render(values):
                outcome = self._executor.run(
                    command,
                    event=f"escalate_{strategy.name}",
                    timeout=strategy.timeout,
                    cancel=token,
                )
                if outcome.succeeded:
                    succeeded = True
                    break
            machine_logger.info(
                "escalation_step",
                extra=logging_ext.build_event_extra(
                    "escalation_step",
                    level=level.value,
                    strategy=strategy.name,
                    path=path,
                    succeeded=succeeded,
                ),
            )
            any_succeeded = any_succeeded or succeeded

        if not any_succeeded:
            human_logger.warning("No %s permission fix succeeded for %s", level.value, path)
        return any_succeeded
