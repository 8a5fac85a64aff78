"""!
@brief Command-line interface tests.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import main, version  # noqa: E402
from appx_janitor.models import AmbiguousPackageName, DeletionOutcome, DeletionResult  # noqa: E402

PACKAGE_ID = "Contoso.Notes_1.0.0.0_x64__abc"


class _Gateway:
    def describe_package(self, name, *, cancel=None):
        if name == "Contoso":
            raise AmbiguousPackageName(name, [PACKAGE_ID, "Contoso.Paint_2.0.0.0_x64__abc"])
        if name.startswith("Contoso.Notes"):
            return {
                "Name": "Contoso.Notes",
                "PackageFullName": PACKAGE_ID,
                "InstallLocation": r"C:\Program Files\WindowsApps\Contoso.Notes",
                "Publisher": "CN=Contoso",
            }
        return None

    def is_registered(self, package_id, *, cancel=None):
        return True

    def list_dependents(self, package_id, *, cancel=None):
        return []


class _Processes:
    def find_related(self, target):
        return []


def _fake_orchestrator(outcome: DeletionOutcome, captured: dict):
    class _Orchestrator:
        def __init__(self, *args, settings=None, **kwargs) -> None:
            captured["settings"] = settings
            self.gateway = _Gateway()
            self.processes = _Processes()

        def delete_many(self, targets, *, progress=None, cancel=None) -> List[DeletionResult]:
            captured["targets"] = list(targets)
            return [DeletionResult(target=target, outcome=outcome) for target in targets]

    return _Orchestrator


@pytest.fixture
def base_args(tmp_path: Path) -> List[str]:
    return ["--no-elevate", "--logdir", str(tmp_path / "logs"), "--quiet"]


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main.build_arg_parser().parse_args(["-V"])

    assert excinfo.value.code == 0
    assert version.__version__ in capsys.readouterr().out


def test_successful_run_exits_zero(monkeypatch: pytest.MonkeyPatch, base_args, capsys) -> None:
    captured: dict = {}
    monkeypatch.setattr(main, "DeletionOrchestrator", _fake_orchestrator(DeletionOutcome.COMPLETE_SUCCESS, captured))

    code = main.main([*base_args, "--settle", "0", "--threshold", "0.8", "Contoso.Notes"])

    assert code == 0
    target = captured["targets"][0]
    assert target.canonical_id == PACKAGE_ID
    assert target.folder_path.endswith("Contoso.Notes")
    assert captured["settings"].settle_delay == 0.0
    assert captured["settings"].partial_clear_threshold == 0.8
    assert "complete success" in capsys.readouterr().out


def test_failed_outcome_exits_two(monkeypatch: pytest.MonkeyPatch, base_args) -> None:
    captured: dict = {}
    monkeypatch.setattr(main, "DeletionOrchestrator", _fake_orchestrator(DeletionOutcome.FAILED, captured))

    assert main.main([*base_args, "Unknown.App_1_x64__p"]) == 2
    assert captured["targets"][0].folder_path == ""


def test_folder_and_protected_flags(monkeypatch: pytest.MonkeyPatch, base_args) -> None:
    captured: dict = {}
    monkeypatch.setattr(main, "DeletionOrchestrator", _fake_orchestrator(DeletionOutcome.COMPLETE_SUCCESS, captured))

    main.main([*base_args, "--folder", r"D:\Apps\Notes", "--protected", "Contoso.Notes"])

    target = captured["targets"][0]
    assert target.folder_path == r"D:\Apps\Notes"
    assert target.is_protected


def test_folder_requires_single_package(base_args) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main.main([*base_args, "--folder", "x", "A_1_x64__p", "B_1_x64__p"])

    assert excinfo.value.code == 2


def test_invalid_setting_exits_one(base_args, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main.main([*base_args, "--threshold", "1.5", "Contoso.Notes"])

    assert excinfo.value.code == 1
    assert "partial_clear_threshold" in capsys.readouterr().err


def test_diagnose_prints_analysis_without_deleting(monkeypatch: pytest.MonkeyPatch, base_args, capsys) -> None:
    captured: dict = {}
    monkeypatch.setattr(main, "DeletionOrchestrator", _fake_orchestrator(DeletionOutcome.FAILED, captured))

    code = main.main([*base_args, "--diagnose", "Contoso.Notes"])

    output = capsys.readouterr().out
    assert code == 0
    assert "targets" not in captured
    assert PACKAGE_ID in output
    assert "Package folder does not exist" in output


def test_ambiguous_package_name_exits_one_without_deleting(monkeypatch: pytest.MonkeyPatch, base_args, capsys) -> None:
    captured: dict = {}
    monkeypatch.setattr(main, "DeletionOrchestrator", _fake_orchestrator(DeletionOutcome.COMPLETE_SUCCESS, captured))

    code = main.main([*base_args, "Contoso"])

    assert code == 1
    assert "targets" not in captured
    err = capsys.readouterr().err
    assert "matches several packages" in err
    assert "Contoso.Paint_2.0.0.0_x64__abc" in err
