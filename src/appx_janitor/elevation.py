"""!
@brief Elevation and user-context helpers.
@details Package removal for all users, ownership changes under
``WindowsApps`` and DISM servicing all require an elevated token. These
helpers detect elevation, name the current user for ACL grants, and relaunch
the CLI through ``ShellExecuteW`` with the ``runas`` verb.
"""
from __future__ import annotations

import ctypes
import os
import subprocess
import sys
from typing import Sequence

from . import logging_ext


def is_admin() -> bool:
    """!
    @brief Determine whether the current process token has administrative rights.
    """

    if os.name != "nt":
        return False
    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
        return bool(shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def current_username() -> str:
    """!
    @brief Return the current user name best-effort.
    """

    for candidate in (os.getlogin, lambda: os.environ.get("USERNAME"), lambda: os.environ.get("USER")):
        try:
            value = candidate()
        except OSError:
            value = None
        if value:
            return str(value)
    return ""


def qualified_username() -> str:
    """!
    @brief ``DOMAIN\\user`` form used for ``icacls`` grants when a domain is known.
    """

    user = current_username()
    domain = os.environ.get("USERDOMAIN", "")
    if user and domain and "\\" not in user:
        return f"{domain}\\{user}"
    return user


def relaunch_as_admin(argv: Sequence[str] | None = None) -> bool:
    """!
    @brief Relaunch the CLI module with administrative rights.
    @returns ``True`` when the relaunch request was issued successfully.
    """

    if os.name != "nt":
        return False
    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
    except AttributeError:
        return False

    arguments = ["-m", "appx_janitor", *(list(argv) if argv is not None else sys.argv[1:])]
    params = subprocess.list2cmdline(arguments)
    result = shell32.ShellExecuteW(None, "runas", sys.executable, params, None, 1)
    return int(result) > 32


def ensure_admin_and_relaunch_if_needed(argv: Sequence[str] | None = None) -> None:
    """!
    @brief Request elevation if the current process lacks administrative rights.
    @details Exits the current process once the elevated copy has been
    launched; raises :class:`SystemExit` with a message when the request fails.
    """

    if os.name != "nt" or is_admin():
        return

    logging_ext.get_human_logger().info("Requesting administrative rights")
    if not relaunch_as_admin(argv):
        raise SystemExit("Failed to request elevation via ShellExecuteW.")
    sys.exit(0)


__all__ = [
    "current_username",
    "ensure_admin_and_relaunch_if_needed",
    "is_admin",
    "qualified_username",
    "relaunch_as_admin",
]
