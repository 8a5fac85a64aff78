"""!
@brief Primary entry point for the AppX Janitor CLI.
@details Parses arguments, resolves settings, requests elevation, sets up
logging, and runs the deletion workflow for each requested package. With
``--diagnose`` only the pre-deletion analysis is printed.
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import pathlib
import signal
import sys
from typing import Iterable, List, Optional

from . import analysis, config, elevation, exec_utils, fs_tools, logging_ext, version
from .appx_gateway import PackageManagerGateway
from .cancellation import CancellationToken
from .models import AmbiguousPackageName, DeletionResult, PackageTarget
from .orchestrator import DeletionOrchestrator

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_INCOMPLETE = 2


def build_arg_parser() -> argparse.ArgumentParser:
    """!
    @brief Create the top-level argument parser.
    """

    parser = argparse.ArgumentParser(
        prog="appx-janitor",
        description="Remove AppX/MSIX packages, reconciling registration and leftover files.",
        add_help=True,
    )
    metadata = version.build_info()
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"{metadata['version']} ({metadata['build']})",
    )
    parser.add_argument("packages", nargs="+", metavar="PACKAGE", help="Package name or full name to remove.")
    parser.add_argument("--config", metavar="FILE", help="JSON configuration file.")
    parser.add_argument("--logdir", metavar="DIR", help="Directory for human/JSONL log output.")
    parser.add_argument("--json", action="store_true", help="Mirror structured events to stdout.")
    parser.add_argument("--quiet", action="store_true", help="Minimal console output (errors only).")
    parser.add_argument(
        "--timeout",
        metavar="SEC",
        type=float,
        dest="command_timeout_ceiling",
        help="Upper bound for every external command timeout.",
    )
    parser.add_argument(
        "--threshold",
        metavar="F",
        type=float,
        dest="partial_clear_threshold",
        help="Share of files that must be removed for a partial folder deletion to count.",
    )
    parser.add_argument(
        "--strict-success",
        action="store_const",
        const=True,
        dest="strict_success_marker",
        help="Require the success marker in removal output.",
    )
    parser.add_argument(
        "--settle",
        metavar="SEC",
        type=float,
        dest="settle_delay",
        help="Pause between workflow steps.",
    )
    parser.add_argument("--workers", metavar="N", type=int, dest="max_workers", help="Concurrent deletions.")
    parser.add_argument("--diagnose", action="store_true", help="Print the pre-deletion analysis only.")
    parser.add_argument("--no-elevate", action="store_true", help="Do not request administrative rights.")
    parser.add_argument("--folder", metavar="PATH", help="Install folder, when removing a single package.")
    parser.add_argument("--protected", action="store_true", help="Treat the packages as protected components.")
    return parser


def _resolve_log_directory(candidate: Optional[str]) -> pathlib.Path:
    """!
    @brief Determine the log directory path, using platform defaults when unspecified.
    """

    if candidate:
        return pathlib.Path(candidate).expanduser().resolve()
    default_dir = fs_tools.get_default_log_directory()
    expanded = default_dir.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded


def _bootstrap_logging(args: argparse.Namespace, logdir: Optional[str]) -> tuple[logging.Logger, logging.Logger]:
    """!
    @brief Initialize human and machine loggers using :mod:`logging_ext` helpers.
    """

    directory = _resolve_log_directory(logdir)
    human_logger, machine_logger = logging_ext.setup_logging(
        directory,
        json_to_stdout=getattr(args, "json", False),
    )
    if getattr(args, "quiet", False):
        human_logger.setLevel(logging.ERROR)
    return human_logger, machine_logger


def _settings_from_args(args: argparse.Namespace) -> config.JanitorSettings:
    file_values = config.load_config_file(args.config)
    cli_values = {
        "settle_delay": args.settle_delay,
        "partial_clear_threshold": args.partial_clear_threshold,
        "strict_success_marker": args.strict_success_marker,
        "command_timeout_ceiling": args.command_timeout_ceiling,
        "max_workers": args.max_workers,
        "logdir": args.logdir,
    }
    try:
        return config.resolve_settings(cli_values, file_values=file_values)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc


def build_targets(
    packages: Iterable[str],
    gateway: PackageManagerGateway,
    *,
    folder: Optional[str] = None,
    protected: bool = False,
) -> List[PackageTarget]:
    """!
    @brief Turn package names from the command line into deletion targets.
    @details The package manager supplies the full name and install location
    when it knows the package; otherwise the argument is used as-is.
    @raises AmbiguousPackageName when an argument matches several packages.
    """

    targets: List[PackageTarget] = []
    for name in packages:
        info = gateway.describe_package(name) or {}
        canonical_id = str(info.get("PackageFullName") or name)
        target = PackageTarget.from_canonical_id(
            canonical_id,
            folder or str(info.get("InstallLocation") or ""),
            display_name=info.get("Name") or None,
            publisher=str(info.get("Publisher") or ""),
        )
        if protected and not target.is_protected:
            target = dataclasses.replace(target, is_protected=True)
        targets.append(target)
    return targets


def _print_diagnosis(targets: Iterable[PackageTarget], orchestrator: DeletionOrchestrator) -> None:
    for target in targets:
        print(f"{target.display_name} ({target.canonical_id})")
        print(f"  folder: {target.folder_path or 'unknown'}")
        warning = analysis.deletion_warning(target)
        if warning:
            print(f"  {warning}")
        issues = analysis.analyze(target, orchestrator.gateway, orchestrator.processes)
        if not issues:
            print("  no issues found")
        for issue in issues:
            print(f"  - {issue}")


def _print_results(results: Iterable[DeletionResult]) -> None:
    for result in results:
        print(f"{result.target.display_name}: {result.outcome.value.replace('_', ' ')}")
        for suggestion in result.suggestions:
            print(f"  - {suggestion}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    """!
    @brief Entry point for the ``appx-janitor`` console script.
    @returns ``0`` when every package was removed, ``1`` for configuration
    errors and ambiguous package names, ``2`` otherwise.
    """

    arguments = list(argv) if argv is not None else sys.argv[1:]
    parser = build_arg_parser()
    args = parser.parse_args(arguments)
    if args.folder and len(args.packages) > 1:
        parser.error("--folder can only be used with a single package")

    settings = _settings_from_args(args)
    if not args.no_elevate:
        elevation.ensure_admin_and_relaunch_if_needed(arguments)

    human_log, machine_log = _bootstrap_logging(args, settings.logdir)
    try:
        exec_utils.set_global_timeout(settings.command_timeout_ceiling)
        machine_log.info(
            "startup",
            extra=logging_ext.build_event_extra(
                "startup",
                packages=list(args.packages),
                diagnose=bool(args.diagnose),
                settings=dataclasses.asdict(settings),
            ),
        )

        orchestrator = DeletionOrchestrator(settings=settings)
        try:
            targets = build_targets(
                args.packages, orchestrator.gateway, folder=args.folder, protected=args.protected
            )
        except AmbiguousPackageName as exc:
            human_log.error("%s", exc)
            print(f"Error: {exc}. Use the full package name.", file=sys.stderr)
            return EXIT_CONFIG_ERROR

        if args.diagnose:
            _print_diagnosis(targets, orchestrator)
            human_log.info("Diagnostics complete; no changes made.")
            return EXIT_OK

        token = CancellationToken()
        previous_handler = signal.signal(signal.SIGINT, lambda *_: token.cancel("interrupted by user"))
        progress = None if args.quiet else print
        try:
            results = orchestrator.delete_many(targets, progress=progress, cancel=token)
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        _print_results(results)
        return EXIT_OK if all(result.succeeded for result in results) else EXIT_INCOMPLETE
    finally:
        exec_utils.set_global_timeout(None)
        logging_ext.shutdown_logging()


__all__ = ["build_arg_parser", "build_targets", "main"]
