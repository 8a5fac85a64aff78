"""!
@brief Static data shared by the AppX removal pipeline.
@details Centralises package naming delimiters, protected and critical package
prefixes, executable names, and per-command timeout budgets so the gateway,
escalator, and folder reconciler work from a single source of truth.
"""
from __future__ import annotations

import os
from typing import Dict, Tuple

PACKAGE_NAME_DELIMITER = "_"
"""!
@brief Separator between name, version, architecture, and publisher id.
"""

SUCCESS_MARKER = "SUCCESS"
"""!
@brief Literal emitted by wrapped PowerShell commands once the cmdlet returns.
"""

POWERSHELL_EXE = "powershell.exe"
CMD_EXE = "cmd.exe"
DISM_EXE = "dism.exe"
ROBOCOPY_EXE = "robocopy.exe"
TASKKILL_EXE = "taskkill.exe"
WSRESET_EXE = "wsreset.exe"

POWERSHELL_BASE_ARGS: Tuple[str, ...] = ("-NoProfile", "-NonInteractive", "-Command")


def windows_powershell_path() -> str:
    """!
    @brief Location of the in-box Windows PowerShell 5.1 host.
    @details Used by the alternate-host removal variant, which sometimes
    succeeds where a newer PowerShell host fails on AppX cmdlets.
    """

    system_root = os.environ.get("SystemRoot") or os.environ.get("WINDIR") or r"C:\Windows"
    return os.path.join(system_root, "System32", "WindowsPowerShell", "v1.0", "powershell.exe")


PROTECTED_PACKAGE_PREFIXES: Tuple[str, ...] = (
    "Microsoft.Windows.Cortana",
    "Microsoft.Windows.ShellExperienceHost",
    "Microsoft.Windows.StartMenuExperienceHost",
    "Microsoft.VCLibs",
    "Microsoft.NET.Native",
    "Microsoft.UI.Xaml",
)

CRITICAL_PACKAGE_PREFIXES: Tuple[str, ...] = (
    "Microsoft.Windows",
    "Microsoft.VCLibs",
    "Microsoft.NET.Native",
    "Microsoft.UI.Xaml",
)

SYSTEM_PUBLISHERS: Tuple[str, ...] = (
    "Microsoft",
    "Microsoft Corporation",
    "CN=Microsoft Corporation",
)

DEFAULT_WINDOWS_APPS_PATH = r"C:\Program Files\WindowsApps"

# Seconds. Values follow the budgets each command historically needed on
# slow machines; the global ceiling in exec_utils can only lower them.
COMMAND_TIMEOUTS: Dict[str, float] = {
    "resolve": 10,
    "query": 10,
    "describe": 30,
    "dependents": 30,
    "remove_standard": 15,
    "remove_all_users": 20,
    "remove_alternate_host": 25,
    "remove_dev_mode_disabled": 20,
    "remove_provisioned": 15,
    "dism_cleanup": 30,
    "cache_reset": 10,
    "taskkill": 10,
    "rmdir": 30,
    "robocopy": 45,
}

MINIMUM_PROCESS_MATCH_LENGTH = 3
"""!
@brief Name keys below this length are never matched against process names.
"""

MANUAL_RECOVERY_SUGGESTIONS: Tuple[str, ...] = (
    "Restart Windows and try again",
    "Use Windows Settings > Apps to remove the app",
    "Check Windows Event Viewer (AppXDeployment-Server) for detailed error information",
    "Ensure the app is not currently running and has no dependent packages",
)
