"""JSON report output: compare-report.json plus the CI-facing diffs summary."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from testivai.errors import PersistenceError
from testivai.models.approvals import ApprovalsMeta, ApprovalsSnapshot
from testivai.models.history import HistoryLedger
from testivai.models.report import CompareReport
from testivai.storage.json_store import JsonDocumentStore

logger = logging.getLogger(__name__)

REPORT_FILENAME = "compare-report.json"
DIFFS_SUMMARY_PATH = Path("diffs") / "diffs.json"


def _write_json(path: Path, data: dict) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2, default=str)
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def build_diffs_summary(report: CompareReport) -> dict:
    """Machine-readable summary for CI: which tests need attention."""
    with_diffs = [t for t in report.tests if t.status in ("changed", "failed", "new")]
    return {
        "summary": {
            "totalTests": report.metadata.total_tests,
            "passedTests": report.metadata.passed_tests,
            "changedTests": report.metadata.changed_tests,
            "newTests": sum(1 for t in report.tests if t.status == "new"),
            "deletedTests": sum(1 for t in report.tests if t.status == "deleted"),
            "hasDifferences": bool(with_diffs),
        },
        "testsWithDifferences": [
            {
                "name": t.name,
                "status": t.status,
                "diffPercentage": t.diff_percentage,
                "diffPixels": t.diff_pixels,
                "baseline": t.baseline,
                "current": t.current,
                "diff": t.diff,
            }
            for t in with_diffs
        ],
        "gitInfo": report.metadata.git_info.to_json_dict(),
        "generatedAt": report.metadata.generated_at,
    }


def generate_json_report(report: CompareReport, output_dir: Path) -> dict[str, str]:
    """Write compare-report.json and diffs/diffs.json. Returns name -> path."""
    output_dir = Path(output_dir)
    report_path = output_dir / REPORT_FILENAME
    diffs_path = output_dir / DIFFS_SUMMARY_PATH

    data = report.to_json_dict()
    if report.metadata.pr_info is None:
        data["metadata"].pop("prInfo", None)
    _write_json(report_path, data)
    _write_json(diffs_path, build_diffs_summary(report))
    logger.info("JSON report: %s", report_path)
    return {"report": str(report_path), "diffs": str(diffs_path)}


def seed_state_files(
    approvals_store: JsonDocumentStore,
    history_store: JsonDocumentStore,
    report: CompareReport,
    max_history: int,
) -> None:
    """Create approvals.json and history.json if they do not exist yet.

    Existing files are left untouched so earlier decisions survive a new run.
    """
    git = report.metadata.git_info

    def seed_approvals(current: dict | None) -> dict:
        if current is not None:
            return current
        snapshot = ApprovalsSnapshot(
            meta=ApprovalsMeta(
                author=git.author,
                timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                commit_sha=git.sha,
            )
        )
        return snapshot.to_json_dict()

    def seed_history(current: dict | None) -> dict:
        if current is not None:
            return current
        return HistoryLedger(max_history=max_history).to_json_dict()

    if not approvals_store.exists():
        approvals_store.mutate(seed_approvals)
    if not history_store.exists():
        history_store.mutate(seed_history)
