"""Report synthesis: merge diff outcomes with human approval decisions."""

from __future__ import annotations

import logging
import time
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from testivai.models.approvals import ApprovalsSnapshot
from testivai.models.comparison import ComparisonResult
from testivai.models.git_info import GitInfo, PRInfo
from testivai.models.report import (
    CompareReport,
    Dimensions,
    GroupedTests,
    ReportMetadata,
    TestRecord,
    TestStatus,
)

logger = logging.getLogger(__name__)

# Used for diff_pixels when a result carries no image dimensions
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 800


def _package_version() -> str:
    try:
        return version("testivai")
    except PackageNotFoundError:
        return "0.0.0"


def raw_status(result: ComparisonResult) -> TestStatus:
    """Diff outcome for one result, before any human decision is applied."""
    if not result.baseline_existed:
        return "new"
    if not result.current_captured:
        return "deleted"
    if result.error:
        return "failed"
    return "passed" if result.passed else "changed"


def approval_status(name: str, approvals: ApprovalsSnapshot | None) -> Optional[str]:
    if approvals is None:
        return None
    if name in approvals.approved:
        return "approved"
    if name in approvals.rejected:
        return "rejected"
    return None


def build_test_record(
    result: ComparisonResult,
    approvals: ApprovalsSnapshot | None = None,
    framework: str = "",
) -> TestRecord:
    if result.width and result.height:
        width, height = result.width, result.height
    else:
        width, height = DEFAULT_WIDTH, DEFAULT_HEIGHT

    return TestRecord(
        name=result.name,
        baseline=result.baseline_path,
        current=result.compare_path,
        diff=result.diff_path,
        status=raw_status(result),
        approval_status=approval_status(result.name, approvals),
        diff_percentage=result.diff_percentage,
        diff_pixels=round(result.diff_percentage * width * height),
        dimensions=Dimensions(width=width, height=height),
        threshold=result.threshold,
        framework=framework,
        error=result.error,
    )


def group_tests(tests: list[TestRecord], approvals: ApprovalsSnapshot | None) -> GroupedTests:
    """Bucket test names by the approvals arrays, not by raw diff status."""
    grouped = GroupedTests()
    if approvals is None:
        return grouped

    for bucket in ("approved", "rejected", "new", "deleted"):
        wanted = set(getattr(approvals, bucket))
        names: list[str] = []
        for test in tests:
            if test.name in wanted and test.name not in names:
                names.append(test.name)
        setattr(grouped, bucket, names)
    return grouped


def partition_unchanged(tests: list[TestRecord]) -> tuple[list[TestRecord], list[TestRecord]]:
    """Split tests into (needs review, unchanged) for display.

    Unchanged means the raw diff passed and nobody recorded a decision.
    """
    review, unchanged = [], []
    for test in tests:
        if test.status == "passed" and test.approval_status is None:
            unchanged.append(test)
        else:
            review.append(test)
    return review, unchanged


def synthesize(
    results: list[ComparisonResult],
    git_info: GitInfo,
    approvals: ApprovalsSnapshot | None = None,
    pr_info: PRInfo | None = None,
    framework: str = "",
) -> CompareReport:
    """Build the full compare report for one run."""
    tests = [build_test_record(r, approvals, framework) for r in results]

    changed = sum(1 for t in tests if t.status in ("changed", "failed"))
    passed = sum(1 for t in tests if t.status == "passed")

    metadata = ReportMetadata(
        generated_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        git_info=git_info,
        pr_info=pr_info,
        total_tests=len(tests),
        changed_tests=changed,
        passed_tests=passed,
        framework=framework,
        version=_package_version(),
    )
    logger.debug("Synthesized report: %d tests, %d changed, %d passed", len(tests), changed, passed)
    return CompareReport(
        metadata=metadata,
        tests=tests,
        grouped_tests=group_tests(tests, approvals),
    )
