from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from appx_janitor import models  # noqa: E402
from appx_janitor.cancellation import NEVER_CANCELLED, CancellationToken  # noqa: E402


def test_package_target_derived_names() -> None:
    target = models.PackageTarget("Microsoft.ZuneMusic_10.22.0.0_x64__8wekyb3d8bbwe", "Groove", "")

    assert target.base_name == "Microsoft.ZuneMusic"
    assert target.family_name == "Microsoft.ZuneMusic_8wekyb3d8bbwe"


@pytest.mark.parametrize("package_id", ["NoDelimiter", "Trailing_"])
def test_family_name_requires_publisher_segment(package_id: str) -> None:
    assert models.family_name_of(package_id) == ""


def test_from_canonical_id_classifies_packages() -> None:
    protected = models.PackageTarget.from_canonical_id("Microsoft.VCLibs.140.00_14.0_x64__8wekyb3d8bbwe", "")
    third_party = models.PackageTarget.from_canonical_id(
        "Contoso.Notes_1.0.0.0_x64__abc", r"C:\Apps\Notes", publisher="CN=Contoso"
    )

    assert protected.is_protected and protected.is_system
    assert not third_party.is_protected and not third_party.is_system
    assert third_party.display_name == "Contoso.Notes"


def test_package_target_is_immutable() -> None:
    target = models.PackageTarget("A_1_x64__p", "A", "")

    with pytest.raises(AttributeError):
        target.display_name = "B"  # type: ignore[misc]


def test_outcome_success_classification() -> None:
    succeeded = {outcome for outcome in models.DeletionOutcome if outcome.succeeded}

    assert succeeded == {
        models.DeletionOutcome.COMPLETE_SUCCESS,
        models.DeletionOutcome.PARTIAL_SUCCESS,
        models.DeletionOutcome.RECOVERY_SUCCESS,
    }


def test_reconciliation_state_and_reports() -> None:
    assert models.ReconciliationState(False, False).removed
    assert not models.ReconciliationState(False, True).removed
    assert models.ReconciliationState(True, False).describe() == "registered=yes, folder=absent"

    report = models.FolderDeletionReport(path="x", soft_success=True)
    assert not report
    assert report.acceptable
    assert not models.AttemptOutcome.failed("nope")


def test_cancellation_token_wait_returns_early() -> None:
    token = CancellationToken()
    assert token.wait(0) is False

    token.cancel("stop")

    assert token.wait(10) is True
    assert token.reason == "stop"
    with pytest.raises(RuntimeError):
        NEVER_CANCELLED.cancel()
