from __future__ import annotations

import sys
from pathlib import Path

import psutil

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import analysis  # noqa: E402
from appx_janitor.cancellation import CancellationToken  # noqa: E402
from appx_janitor.models import PackageTarget  # noqa: E402


class _Gateway:
    def __init__(self, registered: bool = True, dependents=()) -> None:
        self.registered = registered
        self.dependents = list(dependents)
        self.tokens: list = []

    def is_registered(self, package_id, *, cancel=None) -> bool:
        self.tokens.append(cancel)
        return self.registered

    def list_dependents(self, package_id, *, cancel=None):
        self.tokens.append(cancel)
        return self.dependents


class _Processes:
    def __init__(self, running=(), error: Exception | None = None) -> None:
        self.running = list(running)
        self.error = error

    def find_related(self, target):
        if self.error is not None:
            raise self.error
        return self.running


def test_clean_target_has_no_issues(tmp_path: Path) -> None:
    target = PackageTarget("Contoso.Notes_1.0.0.0_x64__abc", "Notes", str(tmp_path))

    assert analysis.analyze(target, _Gateway(), _Processes()) == []


def test_reports_every_concern(tmp_path: Path) -> None:
    target = PackageTarget(
        "Microsoft.Windows.Photos_1.0.0.0_x64__8wekyb3d8bbwe",
        "Photos",
        str(tmp_path / "missing"),
        is_protected=True,
        is_system=True,
    )

    issues = analysis.analyze(target, _Gateway(registered=False), _Processes(running=[object(), object()]))

    assert issues == [
        "2 related process(es) are running and will be closed",
        "Package folder does not exist",
        "Package is marked as protected",
        "Package is a system app and Windows may reinstall it",
        "Package looks like a critical Windows component",
        "Package is not visible to the package manager",
    ]


def test_dependents_and_enumeration_failure(tmp_path: Path) -> None:
    target = PackageTarget("Contoso.Runtime_1.0.0.0_x64__abc", "Runtime", str(tmp_path))

    issues = analysis.analyze(
        target,
        _Gateway(dependents=["Contoso.Notes_1.0.0.0_x64__abc"]),
        _Processes(error=psutil.AccessDenied()),
    )

    assert issues == [
        "Could not inspect running processes",
        "1 installed package(s) depend on it: Contoso.Notes_1.0.0.0_x64__abc",
    ]


def test_package_manager_queries_receive_cancellation_token(tmp_path: Path) -> None:
    target = PackageTarget("Contoso.Notes_1.0.0.0_x64__abc", "Notes", str(tmp_path))
    gateway = _Gateway()
    token = CancellationToken()

    analysis.analyze(target, gateway, _Processes(), cancel=token)

    assert gateway.tokens == [token, token]


def test_deletion_warning() -> None:
    protected = PackageTarget("Microsoft.VCLibs_14.0_x64__8wekyb3d8bbwe", "VCLibs", "", is_protected=True)
    system = PackageTarget("Microsoft.ZuneMusic_1_x64__8wekyb3d8bbwe", "Groove", "", is_system=True)
    ordinary = PackageTarget("Contoso.Notes_1_x64__abc", "Notes", "")

    assert "protected system component" in analysis.deletion_warning(protected)
    assert "system app" in analysis.deletion_warning(system)
    assert analysis.deletion_warning(ordinary) is None


def test_find_residue_lists_existing_locations(tmp_path: Path) -> None:
    target = PackageTarget("Contoso.Notes_1.0.0.0_x64__abc", "Notes", "")
    packages_dir = tmp_path / "Packages" / "Contoso.Notes_abc"
    packages_dir.mkdir(parents=True)

    assert analysis.find_residue(target, env={"LOCALAPPDATA": str(tmp_path)}) == [packages_dir]
    assert analysis.find_residue(target, env={}) == []
