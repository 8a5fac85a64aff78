"""!
@brief AppX Janitor package root.
@details Modules under this namespace coordinate the removal of packaged
Windows applications: process termination, permission escalation, package
manager removal variants, folder reconciliation, and the state machine that
verifies the package is both unregistered and gone from disk.
"""

__all__ = [
    "main",
    "models",
    "constants",
    "cancellation",
    "config",
    "exec_utils",
    "appx_gateway",
    "processes",
    "permissions",
    "fs_tools",
    "analysis",
    "narrative",
    "orchestrator",
    "logging_ext",
    "elevation",
    "version",
]
