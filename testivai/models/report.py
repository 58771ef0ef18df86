"""Report data structures produced by the synthesizer."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from testivai.models.base import CamelModel
from testivai.models.git_info import GitInfo, PRInfo

TestStatus = Literal["passed", "changed", "failed", "new", "deleted"]
ApprovalStatus = Literal["approved", "rejected"]


class Dimensions(CamelModel):
    width: int
    height: int


class TestRecord(CamelModel):
    __test__ = False  # keep pytest from collecting the model

    name: str
    baseline: str
    current: str
    diff: Optional[str] = None
    status: TestStatus  # raw diff outcome, never overwritten by approvals
    approval_status: Optional[ApprovalStatus] = None
    display_status: str = ""
    diff_percentage: float = 0.0
    diff_pixels: int = 0
    dimensions: Dimensions
    threshold: float = 0.0
    framework: str = ""
    error: Optional[str] = None

    def model_post_init(self, __context) -> None:
        if not self.display_status:
            self.display_status = self.approval_status or self.status


class GroupedTests(CamelModel):
    """Test names bucketed by the approvals snapshot."""

    approved: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)
    new: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class ReportMetadata(CamelModel):
    generated_at: str
    git_info: GitInfo
    pr_info: Optional[PRInfo] = None
    total_tests: int = 0
    changed_tests: int = 0
    passed_tests: int = 0
    framework: str = ""
    version: str = ""


class CompareReport(CamelModel):
    metadata: ReportMetadata
    tests: list[TestRecord] = Field(default_factory=list)
    grouped_tests: GroupedTests = Field(default_factory=GroupedTests)

    def get_test(self, name: str) -> TestRecord | None:
        for test in self.tests:
            if test.name == name:
                return test
        return None
